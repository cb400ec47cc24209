from datetime import timedelta

from loguru import logger
from sqlalchemy import delete
from sqlalchemy import select
from sqlalchemy import text
from sqlalchemy.orm import aliased

from fedbox import models
from fedbox import users
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.database import Database
from fedbox.utils.datetime import now


async def prune_old_data(
    db_session: AsyncSession,
    config: Config,
) -> None:
    logger.info(
        f"Pruning old data with {config.timeline_purge_days=} "
        f"{config.queue_purge_days=}"
    )
    await _prune_old_timeline_entries(db_session, config)
    await _prune_orphan_objects(db_session, config)
    await _prune_old_notifications(db_session, config)
    await _prune_stuck_queue_items(db_session, config)


async def _prune_old_timeline_entries(
    db_session: AsyncSession,
    config: Config,
) -> None:
    horizon = now() - timedelta(days=config.timeline_purge_days)
    for user in await users.list_users(db_session, config):
        result = await db_session.execute(
            delete(models.TimelineEntry)
            .where(
                models.TimelineEntry.user_id == user.id,
                models.TimelineEntry.created_at < horizon,
                # Keep the user own posts
                models.TimelineEntry.object_ap_id.not_like(f"{user.actor_id}/%"),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Deleted {result.rowcount} old entries for {user.uid}")  # type: ignore  # noqa: E501


async def _prune_orphan_objects(
    db_session: AsyncSession,
    config: Config,
) -> None:
    horizon = now() - timedelta(days=config.timeline_purge_days)
    child = aliased(models.Object)
    result = await db_session.execute(
        delete(models.Object)
        .where(
            models.Object.created_at < horizon,
            # Local objects are never purged
            models.Object.ap_id.not_like(f"{config.base_url}/%"),
            models.Object.ap_id.not_in(select(models.TimelineEntry.object_ap_id)),
            models.Object.ap_id.not_in(select(models.Admiration.object_ap_id)),
            models.Object.ap_id.not_in(
                select(child.in_reply_to).where(child.in_reply_to.is_not(None))
            ),
        )
        .execution_options(synchronize_session=False)
    )
    logger.info(f"Deleted {result.rowcount} orphan objects")  # type: ignore


async def _prune_old_notifications(
    db_session: AsyncSession,
    config: Config,
) -> None:
    horizon = now() - timedelta(days=config.timeline_purge_days)
    for model in [models.Notification, models.ErrorArchive]:
        result = await db_session.execute(
            delete(model)
            .where(model.created_at < horizon)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Deleted {result.rowcount} old {model.__tablename__}")  # type: ignore  # noqa: E501


async def _prune_stuck_queue_items(
    db_session: AsyncSession,
    config: Config,
) -> None:
    result = await db_session.execute(
        delete(models.QueueItem)
        .where(
            models.QueueItem.created_at
            < now() - timedelta(days=config.queue_purge_days),
            # Scheduled poll closes may be far away
            models.QueueItem.kind != models.QueueItemKind.CLOSE_QUESTION,
        )
        .execution_options(synchronize_session=False)
    )
    logger.info(f"Deleted {result.rowcount} stuck queue items")  # type: ignore


async def run_prune_old_data(config: Config) -> None:
    """CLI entrypoint."""
    database = Database(config)
    async with database.async_session() as db_session:
        await prune_old_data(db_session, config)
        await db_session.commit()

        # Reclaim disk space
        await db_session.execute(text("VACUUM"))
