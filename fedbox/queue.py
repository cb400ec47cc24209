"""Persistent work queue.

Items are claimed by deleting their row in a transaction of its own, a retry
is a new row carrying the updated counters. Per-user items (fan-out, input,
polls, replies) are drained by `UserQueueWorker`, the others by
`GlobalQueueWorker`.
"""
import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from typing import Any
from typing import Awaitable
from typing import Callable

from loguru import logger
from sqlalchemy import delete
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from fedbox import activitypub as ap
from fedbox import instances
from fedbox import models
from fedbox import users
from fedbox.actor import get_actor_inbox
from fedbox.config import Config
from fedbox.config import load_config
from fedbox.database import AsyncSession
from fedbox.database import Database
from fedbox.httpsig import SignedRequest
from fedbox.inbox import InboxStatus
from fedbox.inbox import is_msg_for_me
from fedbox.inbox import process_input_message
from fedbox.users import LocalUser
from fedbox.utils.datetime import now
from fedbox.utils.workers import Worker
from fedbox.utils.workers import run_workers

# Client errors that will never turn into a success
FATAL_OUTPUT_STATUSES = [400, 404, 405, 410]
TIMEOUT_STATUSES = [499, ap.TIMEOUT_STATUS]

INPUT_PROCESSING_TIMEOUT = 60

USER_KINDS = [
    models.QueueItemKind.MESSAGE,
    models.QueueItemKind.INPUT,
    models.QueueItemKind.CLOSE_QUESTION,
    models.QueueItemKind.REQUEST_REPLIES,
]
GLOBAL_KINDS = [
    models.QueueItemKind.OUTPUT,
    models.QueueItemKind.SHARED_INPUT,
    models.QueueItemKind.EMAIL,
    models.QueueItemKind.CHAT,
    models.QueueItemKind.PURGE,
]


def retry_delta(previous_status: int | None, new_status: int) -> int | None:
    """Returns how much a failed delivery adds to the retry counter.

    None means the failure is terminal. A timeout repeating the previous
    one costs two retries.
    """
    if new_status in FATAL_OUTPUT_STATUSES or new_status < 0:
        return None

    if new_status == previous_status and new_status in TIMEOUT_STATUSES:
        return 2

    return 1


def output_timeout(config: Config, previous_status: int | None) -> int:
    if previous_status in TIMEOUT_STATUSES:
        return config.queue_timeout_2
    return config.queue_timeout


def trim_payload(text: str | None, max_length: int = 64) -> str:
    if not text:
        return ""

    if len(text) > max_length:
        text = text[:max_length] + "..."

    text = text.replace("\n", "").replace("\r", "")
    if not text:
        return ""

    return f" [{text}]"


# Enqueuing


async def _enqueue(
    db_session: AsyncSession,
    kind: models.QueueItemKind,
    payload: dict[str, Any],
    user: LocalUser | None = None,
    retries: int = 0,
    last_status: int | None = None,
    next_try: datetime | None = None,
) -> models.QueueItem:
    item = models.QueueItem(
        kind=kind,
        user_id=user.id if user else None,
        payload=payload,
        retries=retries,
        last_status=last_status,
        next_try=next_try or now(),
    )
    db_session.add(item)
    await db_session.flush()
    logger.debug(f"Enqueued {kind.value} #{retries}")
    return item


def _next_try(config: Config, retries: int) -> datetime:
    return now() + timedelta(minutes=retries * config.queue_retry_minutes)


async def enqueue_input(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    msg: ap.RawObject,
    req: dict[str, Any],
    retries: int = 0,
) -> models.QueueItem:
    return await _enqueue(
        db_session,
        models.QueueItemKind.INPUT,
        {"message": msg, "req": req},
        user=user,
        retries=retries,
        next_try=_next_try(config, retries),
    )


async def enqueue_shared_input(
    db_session: AsyncSession,
    config: Config,
    msg: ap.RawObject,
    req: dict[str, Any],
    retries: int = 0,
) -> models.QueueItem:
    return await _enqueue(
        db_session,
        models.QueueItemKind.SHARED_INPUT,
        {"message": msg, "req": req},
        retries=retries,
        next_try=_next_try(config, retries),
    )


async def enqueue_output(
    db_session: AsyncSession,
    user: LocalUser,
    msg: ap.RawObject,
    inbox: str,
    retries: int = 0,
    last_status: int | None = None,
    next_try: datetime | None = None,
) -> models.QueueItem:
    if user.owns(inbox):
        raise ValueError(f"Refusing to deliver to our own inbox {inbox}")

    return await _enqueue(
        db_session,
        models.QueueItemKind.OUTPUT,
        {"message": msg, "inbox": inbox},
        user=user,
        retries=retries,
        last_status=last_status,
        next_try=next_try,
    )


async def enqueue_output_by_actor(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    msg: ap.RawObject,
    actor_id: str,
) -> models.QueueItem | None:
    inbox = await get_actor_inbox(db_session, config, actor_id)
    if not inbox:
        logger.info(f"enqueue_output_by_actor cannot get inbox for {actor_id}")
        return None

    return await enqueue_output(db_session, user, msg, inbox)


async def enqueue_message(
    db_session: AsyncSession,
    user: LocalUser,
    msg: ap.RawObject,
) -> models.QueueItem:
    return await _enqueue(
        db_session, models.QueueItemKind.MESSAGE, {"message": msg}, user=user
    )


async def enqueue_email(
    db_session: AsyncSession,
    payload: dict[str, str],
    retries: int = 0,
    next_try: datetime | None = None,
) -> models.QueueItem:
    return await _enqueue(
        db_session,
        models.QueueItemKind.EMAIL,
        payload,
        retries=retries,
        next_try=next_try,
    )


async def enqueue_chat(
    db_session: AsyncSession,
    payload: dict[str, str],
    retries: int = 0,
    next_try: datetime | None = None,
) -> models.QueueItem:
    return await _enqueue(
        db_session,
        models.QueueItemKind.CHAT,
        payload,
        retries=retries,
        next_try=next_try,
    )


async def enqueue_close_question(
    db_session: AsyncSession,
    user: LocalUser,
    poll_id: str,
    end_time: datetime,
) -> models.QueueItem:
    return await _enqueue(
        db_session,
        models.QueueItemKind.CLOSE_QUESTION,
        {"id": poll_id},
        user=user,
        next_try=end_time,
    )


async def enqueue_request_replies(
    db_session: AsyncSession,
    user: LocalUser,
    ap_id: str,
) -> models.QueueItem:
    return await _enqueue(
        db_session, models.QueueItemKind.REQUEST_REPLIES, {"id": ap_id}, user=user
    )


async def enqueue_purge(db_session: AsyncSession) -> models.QueueItem:
    return await _enqueue(db_session, models.QueueItemKind.PURGE, {})


# Processing


@dataclass(frozen=True)
class QueueJob:
    id: int
    kind: models.QueueItemKind
    user_id: int | None
    payload: dict[str, Any]
    retries: int
    last_status: int | None

    @classmethod
    def from_item(cls, item: models.QueueItem) -> "QueueJob":
        return cls(
            id=item.id,
            kind=item.kind,
            user_id=item.user_id,
            payload=dict(item.payload or {}),
            retries=item.retries,
            last_status=item.last_status,
        )


async def fetch_next_item(
    db_session: AsyncSession,
    kinds: list[models.QueueItemKind],
) -> models.QueueItem | None:
    return (
        await db_session.scalars(
            select(models.QueueItem)
            .where(
                models.QueueItem.kind.in_(kinds),
                models.QueueItem.next_try <= now(),
            )
            .order_by(models.QueueItem.id)
            .limit(1)
        )
    ).one_or_none()


async def claim(db_session: AsyncSession, item_id: int) -> bool:
    """Takes the item out of the queue, False if another worker got it."""
    result = await db_session.execute(
        delete(models.QueueItem).where(models.QueueItem.id == item_id)
    )
    return result.rowcount == 1  # type: ignore


async def _requeue(
    db_session: AsyncSession,
    config: Config,
    job: QueueJob,
    retries: int,
    last_status: int | None = None,
) -> models.QueueItem | None:
    """Puts a failed job back, unless it went over the retry ceiling."""
    if retries > config.queue_retry_max:
        logger.info(f"{job.kind.value} giving up after {job.retries} retries")
        return None

    logger.info(f"{job.kind.value} requeue #{retries}")
    item = models.QueueItem(
        kind=job.kind,
        user_id=job.user_id,
        payload=job.payload,
        retries=retries,
        last_status=last_status,
        next_try=_next_try(config, retries),
    )
    db_session.add(item)
    await db_session.flush()
    return item


async def _get_job_user(
    db_session: AsyncSession,
    config: Config,
    job: QueueJob,
) -> LocalUser | None:
    if job.user_id is None:
        return None
    return await users.get_user_by_id(db_session, config, job.user_id)


async def process_message_item(
    db_session: AsyncSession,
    config: Config,
    job: QueueJob,
    user: LocalUser | None,
) -> None:
    from fedbox.outbox import dispatch

    if not user or not (msg := job.payload.get("message")):
        logger.warning(f"invalid message item {job.id}")
        return

    await dispatch(db_session, config, user, msg)


async def process_output_item(
    db_session: AsyncSession,
    config: Config,
    job: QueueJob,
    user: LocalUser | None,
) -> None:
    inbox = job.payload.get("inbox")
    msg = job.payload.get("message")
    if not inbox or not msg or not user:
        logger.warning("output message error: missing fields")
        return

    if await instances.is_instance_blocked(db_session, config, inbox):
        logger.info(f"discarded output message to blocked instance {inbox}")
        return

    # A slow but alive server gets more time on its next attempt
    result = await ap.post(
        config, user.key, inbox, msg, timeout=output_timeout(config, job.last_status)
    )
    status = result.status
    logger.info(
        f"output message: sent to inbox {inbox} {status}{trim_payload(result.text)}"
    )

    if result.is_success:
        return

    delta = retry_delta(job.last_status, status)
    if delta is None:
        logger.info(f"output message: fatal error {inbox} {status}")
        return

    await _requeue(db_session, config, job, job.retries + delta, status)


async def process_input_item(
    db_session: AsyncSession,
    config: Config,
    job: QueueJob,
    user: LocalUser | None,
) -> None:
    msg = job.payload.get("message")
    if not msg:
        return

    if job.kind == models.QueueItemKind.INPUT and not user:
        logger.warning(f"input item {job.id} for an unknown user")
        return

    req = job.payload.get("req")
    status = await asyncio.wait_for(
        process_input_message(
            db_session,
            config,
            user,
            msg,
            SignedRequest.from_dict(req) if req else None,
        ),
        timeout=INPUT_PROCESSING_TIMEOUT,
    )

    if status == InboxStatus.RETRYABLE:
        await _requeue(db_session, config, job, job.retries + 1)
    elif status == InboxStatus.PROPAGATE:
        await _propagate(db_session, config, msg, req or {})


async def _propagate(
    db_session: AsyncSession,
    config: Config,
    msg: ap.RawObject,
    req: dict[str, Any],
) -> int:
    """Hands a shared inbox activity to every user it is addressed to."""
    count = 0
    for user in await users.list_users(db_session, config):
        if await is_msg_for_me(db_session, user, msg):
            logger.debug(f"enqueue_input (from shared inbox) for {user.uid}")
            await enqueue_input(db_session, config, user, msg, req)
            count += 1

    if count == 0:
        logger.info(f"no valid recipients for {msg.get('id')}")

    return count


async def process_close_question_item(
    db_session: AsyncSession,
    config: Config,
    job: QueueJob,
    user: LocalUser | None,
) -> None:
    from fedbox.polls import update_question

    if user and (poll_id := job.payload.get("id")):
        await update_question(db_session, config, user, poll_id)


async def process_request_replies_item(
    db_session: AsyncSession,
    config: Config,
    job: QueueJob,
    user: LocalUser | None,
) -> None:
    from fedbox.thread import request_replies

    if user and (ap_id := job.payload.get("id")):
        await request_replies(db_session, config, user, ap_id)


async def process_email_item(
    db_session: AsyncSession,
    config: Config,
    job: QueueJob,
    user: LocalUser | None,
) -> None:
    from fedbox.notifications import send_email

    if await send_email(config, job.payload):
        logger.debug("email message sent")
    else:
        await _requeue(db_session, config, job, job.retries + 1)


async def process_chat_item(
    db_session: AsyncSession,
    config: Config,
    job: QueueJob,
    user: LocalUser | None,
) -> None:
    from fedbox.notifications import send_chat

    status = await send_chat(job.payload)
    if not ap.is_valid_status(status):
        await _requeue(db_session, config, job, job.retries + 1, status)


async def process_purge_item(
    db_session: AsyncSession,
    config: Config,
    job: QueueJob,
    user: LocalUser | None,
) -> None:
    from fedbox.prune import prune_old_data

    logger.info("purge start")
    await prune_old_data(db_session, config)
    logger.info("purge end")


JobHandler = Callable[
    [AsyncSession, Config, QueueJob, LocalUser | None], Awaitable[None]
]

_JOB_HANDLERS: dict[models.QueueItemKind, JobHandler] = {
    models.QueueItemKind.MESSAGE: process_message_item,
    models.QueueItemKind.OUTPUT: process_output_item,
    models.QueueItemKind.INPUT: process_input_item,
    models.QueueItemKind.SHARED_INPUT: process_input_item,
    models.QueueItemKind.CLOSE_QUESTION: process_close_question_item,
    models.QueueItemKind.REQUEST_REPLIES: process_request_replies_item,
    models.QueueItemKind.EMAIL: process_email_item,
    models.QueueItemKind.CHAT: process_chat_item,
    models.QueueItemKind.PURGE: process_purge_item,
}


async def process_item(
    db_session: AsyncSession,
    config: Config,
    item: models.QueueItem,
) -> bool:
    """Claims and processes a queue item, returns False if it was not claimed.

    The claim is committed before the handler runs, so the SQLite write lock
    is not held during network calls. An unexpected error rolls back what
    the handler did and puts the job back in the queue like any other
    transient failure.
    """
    job = QueueJob.from_item(item)
    try:
        claimed = await claim(db_session, job.id)
        await db_session.commit()
    except OperationalError:
        logger.exception(f"Failed to claim queue item {job.id}")
        await db_session.rollback()
        return False

    if not claimed:
        logger.info(f"queue item {job.id} already claimed")
        return False

    try:
        user = await _get_job_user(db_session, config, job)
        if job.kind == models.QueueItemKind.SHARED_INPUT:
            user = None
        await _JOB_HANDLERS[job.kind](db_session, config, job, user)
        await db_session.commit()
    except Exception:
        logger.exception(f"Failed to process {job.kind.value} item {job.id}")
        await db_session.rollback()
        await _requeue(db_session, config, job, job.retries + 1, job.last_status)
        await db_session.commit()

    return True


async def process_queue(
    db_session: AsyncSession,
    config: Config,
    kinds: list[models.QueueItemKind],
) -> int:
    """Drains every item ready to be processed, returns the count."""
    count = 0
    while item := await fetch_next_item(db_session, kinds):
        await process_item(db_session, config, item)
        count += 1
    return count


class _QueueWorker(Worker[models.QueueItem]):
    kinds: list[models.QueueItemKind] = []

    def __init__(self, config: Config, database: Database) -> None:
        super().__init__(database)
        self.config = config

    async def process_message(
        self,
        db_session: AsyncSession,
        item: models.QueueItem,
    ) -> None:
        await process_item(db_session, self.config, item)

    async def get_next_message(
        self,
        db_session: AsyncSession,
    ) -> models.QueueItem | None:
        return await fetch_next_item(db_session, self.kinds)


class UserQueueWorker(_QueueWorker):
    kinds = USER_KINDS


class GlobalQueueWorker(_QueueWorker):
    kinds = GLOBAL_KINDS


async def loop(config: Config) -> None:
    database = Database(config)
    await run_workers(
        UserQueueWorker(config, database),
        GlobalQueueWorker(config, database),
    )


if __name__ == "__main__":
    asyncio.run(loop(load_config(sys.argv[1] if len(sys.argv) > 1 else None)))
