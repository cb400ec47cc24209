from loguru import logger

from fedbox import activitypub as ap
from fedbox import instances
from fedbox import users
from fedbox.actor import get_actor_inbox
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.users import LocalUser


async def recipients(
    db_session: AsyncSession,
    user: LocalUser,
    activity: ap.RawObject,
    expand_public: bool = False,
) -> set[str]:
    """Returns the set of actor IDs an activity is addressed to.

    With `expand_public`, the public address is replaced by the followers.
    """
    rcpts: set[str] = set()
    for field_name in ["to", "cc"]:
        for rcpt in ap.as_list(activity.get(field_name)):
            if not isinstance(rcpt, str) or not rcpt:
                continue

            if rcpt == ap.AS_PUBLIC and expand_public:
                rcpts.update(await users.follower_list(db_session, user))
            else:
                rcpts.add(rcpt)

    if expand_public:
        rcpts.discard(ap.AS_PUBLIC)

    return rcpts


async def dispatch(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    activity: ap.RawObject,
) -> set[str]:
    """Enqueues one output item per distinct inbox, returns the inboxes."""
    from fedbox.queue import enqueue_output

    inboxes: set[str] = set()
    for rcpt in sorted(await recipients(db_session, user, activity, True)):
        if rcpt == user.actor_id:
            continue

        inbox = await get_actor_inbox(db_session, config, rcpt)
        if not inbox:
            logger.info(f"cannot find inbox for {rcpt}")
            continue

        if inbox not in inboxes:
            inboxes.add(inbox)
            await enqueue_output(db_session, user, activity, inbox)

    # Public activities also go to every known instance
    if ap.is_public(activity):
        for inbox in await instances.inbox_list(db_session):
            if inbox not in inboxes:
                inboxes.add(inbox)
                await enqueue_output(db_session, user, activity, inbox)

    logger.info(f"Dispatched {activity.get('id')} to {len(inboxes)} inboxes")
    return inboxes


async def post_message(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    actor_id: str,
    activity: ap.RawObject,
) -> int:
    """Tries to deliver right away, falls back to the queue.

    Returns the status of the direct attempt (0 if the inbox is unknown).
    """
    from fedbox.queue import enqueue_message

    status = 0
    if inbox := await get_actor_inbox(db_session, config, actor_id):
        result = await ap.post(
            config, user.key, inbox, activity, timeout=config.queue_timeout
        )
        status = result.status

    if ap.is_valid_status(status):
        logger.info(f"Delivered {activity.get('type')} to {actor_id} {status}")
    else:
        logger.info(f"Failed to post to {actor_id} ({status}), queuing")
        await enqueue_message(db_session, user, activity)

    return status
