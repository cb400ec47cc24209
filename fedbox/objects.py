"""Object store: remote and local ActivityPub objects.

Objects are addressable by two distinct keys: their canonical ID (the URL
naming them) and a fingerprint derived from it. `fingerprint` is the only
way to go from the former to the latter.
"""
import hashlib
from typing import Any
from typing import NewType

from loguru import logger
from sqlalchemy import delete
from sqlalchemy import select

from fedbox import activitypub as ap
from fedbox import models
from fedbox.database import AsyncSession
from fedbox.utils.datetime import now

ObjectId = NewType("ObjectId", str)
Fingerprint = NewType("Fingerprint", str)


def fingerprint(ap_id: ObjectId | str) -> Fingerprint:
    return Fingerprint(hashlib.md5(ap_id.encode(), usedforsecurity=False).hexdigest())


def _first_id(val: Any) -> str | None:
    for item in ap.as_list(val):
        if isinstance(item, dict):
            item = item.get("id")
        if isinstance(item, str) and item:
            return item
    return None


async def get_object(
    db_session: AsyncSession,
    ap_id: ObjectId | str,
) -> models.Object | None:
    return (
        await db_session.scalars(
            select(models.Object).where(models.Object.ap_id == ap_id)
        )
    ).one_or_none()


async def get_object_by_fingerprint(
    db_session: AsyncSession,
    fp: Fingerprint,
) -> models.Object | None:
    return (
        await db_session.scalars(
            select(models.Object).where(models.Object.fingerprint == fp)
        )
    ).one_or_none()


async def object_here(db_session: AsyncSession, ap_id: str) -> bool:
    """Returns True if the ID is known either as an object or as an actor."""
    if await get_object(db_session, ap_id):
        return True

    return bool(
        (
            await db_session.scalars(
                select(models.Actor.id).where(models.Actor.ap_id == ap_id)
            )
        ).one_or_none()
    )


def _apply(obj: models.Object, ap_object: ap.RawObject) -> None:
    obj.ap_object = ap.remove_context(ap_object)
    obj.ap_type = ap_object.get("type")
    obj.in_reply_to = _first_id(ap_object.get("inReplyTo"))
    obj.attributed_to = _first_id(ap_object.get("attributedTo"))


async def save_object(
    db_session: AsyncSession,
    ap_object: ap.RawObject,
    ap_id: str | None = None,
) -> tuple[models.Object, bool]:
    """Adds the object unless already known, returns (object, created)."""
    ap_id = ap_id or ap.get_id(ap_object)
    if existing := await get_object(db_session, ap_id):
        return existing, False

    obj = models.Object(ap_id=ap_id, fingerprint=fingerprint(ap_id))
    _apply(obj, ap_object)
    db_session.add(obj)
    await db_session.flush()
    logger.debug(f"Saved object {ap_id}")
    return obj, True


async def overwrite_object(
    db_session: AsyncSession,
    ap_object: ap.RawObject,
    ap_id: str | None = None,
) -> models.Object:
    ap_id = ap_id or ap.get_id(ap_object)
    obj = await get_object(db_session, ap_id)
    if not obj:
        obj, _ = await save_object(db_session, ap_object, ap_id)
        return obj

    _apply(obj, ap_object)
    obj.updated_at = now()
    await db_session.flush()
    logger.debug(f"Overwrote object {ap_id}")
    return obj


async def get_children(
    db_session: AsyncSession,
    ap_id: str,
) -> list[models.Object]:
    return (
        await db_session.scalars(
            select(models.Object)
            .where(models.Object.in_reply_to == ap_id)
            .order_by(models.Object.created_at)
        )
    ).all()


async def delete_object(db_session: AsyncSession, ap_id: str) -> bool:
    result = await db_session.execute(
        delete(models.Object).where(models.Object.ap_id == ap_id)
    )
    return result.rowcount > 0  # type: ignore
