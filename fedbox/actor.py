import typing
from datetime import timedelta
from functools import cached_property
from urllib.parse import urlparse

from loguru import logger
from sqlalchemy import select

from fedbox import activitypub as ap
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.utils.datetime import as_utc
from fedbox.utils.datetime import now

if typing.TYPE_CHECKING:
    from fedbox.models import Actor as ActorModel

# Statuses that will never turn into a success on retry
PERMANENT_ERROR_STATUSES = [404, 410]


def is_permanent_error(status: int) -> bool:
    return status in PERMANENT_ERROR_STATUSES or status < 0


def _handle(raw_actor: ap.RawObject) -> str:
    ap_id = ap.get_id(raw_actor["id"])
    domain = urlparse(ap_id)
    if not domain.hostname:
        raise ValueError(f"Invalid actor ID {ap_id}")

    return f'@{raw_actor["preferredUsername"]}@{domain.hostname}'  # type: ignore


class Actor:
    @property
    def ap_actor(self) -> ap.RawObject:
        raise NotImplementedError()

    @property
    def ap_id(self) -> str:
        return ap.get_id(self.ap_actor["id"])

    @property
    def name(self) -> str | None:
        return self.ap_actor.get("name")

    @property
    def preferred_username(self) -> str:
        return self.ap_actor["preferredUsername"]

    @property
    def handle(self) -> str:
        return _handle(self.ap_actor)

    @property
    def ap_type(self) -> str:
        raise NotImplementedError()

    @property
    def inbox_url(self) -> str | None:
        return self.ap_actor.get("inbox")

    @property
    def shared_inbox_url(self) -> str | None:
        endpoints = self.ap_actor.get("endpoints")
        if isinstance(endpoints, dict) and endpoints.get("sharedInbox"):
            return endpoints["sharedInbox"]
        return None

    @property
    def delivery_inbox_url(self) -> str | None:
        """Shared inbox when advertised, personal inbox otherwise."""
        return self.shared_inbox_url or self.inbox_url

    @property
    def public_key_as_pem(self) -> str:
        return self.ap_actor["publicKey"]["publicKeyPem"]

    @property
    def public_key_id(self) -> str:
        return self.ap_actor["publicKey"]["id"]

    @cached_property
    def server(self) -> str:
        return urlparse(self.ap_id).hostname  # type: ignore


class RemoteActor(Actor):
    def __init__(self, ap_actor: ap.RawObject) -> None:
        if (ap_type := ap_actor.get("type")) not in ap.ACTOR_TYPES:
            raise ValueError(f"Unexpected actor type: {ap_type}")

        self._ap_actor = ap_actor
        self._ap_type = ap_type

    @property
    def ap_actor(self) -> ap.RawObject:
        return self._ap_actor

    @property
    def ap_type(self) -> str:
        return self._ap_type


async def get_cached_actor(
    db_session: AsyncSession,
    actor_id: str,
) -> "ActorModel | None":
    from fedbox import models

    return (
        await db_session.scalars(
            select(models.Actor).where(models.Actor.ap_id == actor_id)
        )
    ).one_or_none()


async def save_actor(
    db_session: AsyncSession,
    ap_actor: ap.RawObject,
    actor_id: str | None = None,
) -> "ActorModel":
    from fedbox import models
    from fedbox.objects import fingerprint

    actor_id = actor_id or ap.get_id(ap_actor)
    logger.info(f"Saving actor {actor_id}")
    actor = models.Actor(
        ap_id=actor_id,
        fingerprint=fingerprint(actor_id),
        ap_type=ap_actor.get("type", "Person"),
        ap_actor=ap.remove_context(ap_actor),
    )
    db_session.add(actor)
    await db_session.flush()
    await db_session.refresh(actor)
    return actor


async def update_cached_actor(
    db_session: AsyncSession,
    actor_in_db: "ActorModel",
    ap_actor: ap.RawObject,
) -> None:
    ap_actor = ap.remove_context(ap_actor)
    if actor_in_db.ap_actor != ap_actor:
        actor_in_db.ap_actor = ap_actor
        actor_in_db.ap_type = ap_actor.get("type", actor_in_db.ap_type)

    actor_in_db.updated_at = now()
    await db_session.flush()


async def store_actor(
    db_session: AsyncSession,
    ap_actor: ap.RawObject,
    actor_id: str | None = None,
) -> "ActorModel":
    """Adds or refreshes an actor document in the cache."""
    actor_id = actor_id or ap.get_id(ap_actor)
    if existing_actor := await get_cached_actor(db_session, actor_id):
        await update_cached_actor(db_session, existing_actor, ap_actor)
        return existing_actor

    return await save_actor(db_session, ap_actor, actor_id)


async def resolve_actor(
    db_session: AsyncSession,
    config: Config,
    actor_id: str,
) -> tuple[int, ap.RawObject | None]:
    """Returns (status, actor document), served from the cache when fresh.

    404, 410 and negative statuses are permanent failures, every other
    non-2xx status is worth a retry.
    """
    status = 200
    ap_actor: ap.RawObject | None = None

    existing_actor = await get_cached_actor(db_session, actor_id)
    if existing_actor and now() - as_utc(existing_actor.updated_at) <= timedelta(
        hours=config.actor_refresh_hours
    ):
        ap_actor = existing_actor.ap_actor
    else:
        if existing_actor:
            logger.info(
                f"Refreshing {actor_id=} last updated {existing_actor.updated_at}"
            )

        status, ap_actor = await ap.activitypub_request(config, actor_id)
        if ap.is_valid_status(status) and ap_actor:
            await store_actor(db_session, ap_actor, actor_id)
        elif existing_actor and not is_permanent_error(status):
            # If we fail to refresh the actor, return the cached one
            logger.info(f"Failed to refresh {actor_id} ({status}), using cache")
            status, ap_actor = 200, existing_actor.ap_actor
        else:
            logger.info(f"Failed to resolve actor {actor_id}: {status}")

    if ap.is_valid_status(status) and ap_actor:
        if not config.disable_inbox_collection:
            from fedbox import instances

            await instances.inbox_add_by_actor(db_session, ap_actor)
        else:
            logger.debug("Shared inbox collection is disabled")

    return status, ap_actor


async def get_actor_inbox(
    db_session: AsyncSession,
    config: Config,
    actor_id: str,
) -> str | None:
    status, ap_actor = await resolve_actor(db_session, config, actor_id)
    if not ap.is_valid_status(status) or not ap_actor:
        return None

    try:
        return RemoteActor(ap_actor).delivery_inbox_url
    except ValueError:
        # Not an actor type, but maybe still an inbox owner
        return ap_actor.get("inbox")
