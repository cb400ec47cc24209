from urllib.parse import urlparse

from loguru import logger
from sqlalchemy import delete
from sqlalchemy import select

from fedbox import activitypub as ap
from fedbox import models
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.utils.url import is_hostname_blocked


async def inbox_add(db_session: AsyncSession, url: str) -> None:
    exists = (
        await db_session.scalars(
            select(models.SharedInbox.id).where(models.SharedInbox.url == url)
        )
    ).one_or_none()
    if exists:
        return

    db_session.add(models.SharedInbox(url=url))
    await db_session.flush()
    logger.info(f"Collected shared inbox {url}")


async def inbox_add_by_actor(db_session: AsyncSession, ap_actor: ap.RawObject) -> None:
    endpoints = ap_actor.get("endpoints")
    if not isinstance(endpoints, dict):
        return

    shared_inbox = endpoints.get("sharedInbox")
    if isinstance(shared_inbox, str) and shared_inbox.startswith("http"):
        await inbox_add(db_session, shared_inbox)


async def inbox_list(db_session: AsyncSession) -> list[str]:
    return (
        await db_session.scalars(
            select(models.SharedInbox.url).order_by(models.SharedInbox.id)
        )
    ).all()


async def get_blocked_hostnames(
    db_session: AsyncSession,
    config: Config,
) -> set[str]:
    blocked = set(
        (await db_session.scalars(select(models.BlockedInstance.hostname))).all()
    )
    return blocked | config.blocked_hostnames


async def is_instance_blocked(
    db_session: AsyncSession,
    config: Config,
    url: str,
) -> bool:
    hostname = urlparse(url).hostname
    if not hostname:
        return False

    return is_hostname_blocked(
        hostname, await get_blocked_hostnames(db_session, config)
    )


async def instance_block(db_session: AsyncSession, url_or_hostname: str) -> bool:
    hostname = urlparse(url_or_hostname).hostname or url_or_hostname
    exists = (
        await db_session.scalars(
            select(models.BlockedInstance).where(
                models.BlockedInstance.hostname == hostname
            )
        )
    ).one_or_none()
    if exists:
        return False

    db_session.add(models.BlockedInstance(hostname=hostname))
    await db_session.flush()
    logger.info(f"Blocked instance {hostname}")
    return True


async def instance_unblock(db_session: AsyncSession, url_or_hostname: str) -> bool:
    hostname = urlparse(url_or_hostname).hostname or url_or_hostname
    result = await db_session.execute(
        delete(models.BlockedInstance).where(
            models.BlockedInstance.hostname == hostname
        )
    )
    return result.rowcount > 0  # type: ignore
