from loguru import logger

from fedbox import activitypub as ap
from fedbox import objects
from fedbox import users
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.users import LocalUser
from fedbox.utils.datetime import now
from fedbox.utils.datetime import parse_isoformat

POLL_NOT_FOUND = -1
POLL_ALREADY_CLOSED = -2
POLL_WITHOUT_OPTIONS = -3


def _options_key(poll: ap.RawObject) -> str | None:
    if poll.get("oneOf") is not None:
        return "oneOf"
    if poll.get("anyOf") is not None:
        return "anyOf"
    return None


async def update_question(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    poll_id: str,
) -> int:
    """Recounts the votes of a poll, closing it once its end time is reached.

    The updated poll is sent to its voters. Returns 0 on success, or one of
    the negative `POLL_*` codes.
    """
    from fedbox.messages import msg_update
    from fedbox.notifications import notify
    from fedbox.queue import enqueue_message

    obj = await objects.get_object(db_session, poll_id)
    if not obj:
        return POLL_NOT_FOUND

    poll = dict(obj.ap_object)
    if poll.get("closed"):
        return POLL_ALREADY_CLOSED

    if not (options_key := _options_key(poll)):
        return POLL_WITHOUT_OPTIONS

    counts: dict[str, int] = {}
    for option in ap.as_list(poll[options_key]):
        if isinstance(option, dict) and (name := option.get("name")):
            counts[name] = 0

    voters: set[str] = set()
    for vote in await objects.get_children(db_session, poll_id):
        name = vote.ap_object.get("name")
        attributed_to = vote.attributed_to
        if not name or not attributed_to:
            continue

        # Only votes for one of the existing options count
        if name in counts:
            counts[name] += 1
            voters.add(attributed_to)

    poll[options_key] = [
        {
            "type": "Note",
            "name": name,
            "replies": {"type": "Collection", "totalItems": count},
        }
        for name, count in counts.items()
    ]

    closed = False
    if (end_time := poll.get("endTime")) and now() >= parse_isoformat(end_time):
        poll["closed"] = end_time
        closed = True

    rcpts = sorted(voters)
    poll["votersCount"] = len(rcpts)
    poll["cc"] = rcpts

    await objects.overwrite_object(db_session, poll, poll_id)
    logger.info(f"recounted poll {poll_id} {counts=} {closed=}")
    await users.timeline_touch(db_session, user)

    update_msg = await msg_update(db_session, user, poll)
    update_msg["cc"] = rcpts
    await enqueue_message(db_session, user, update_msg)

    if closed:
        closed_msg = await msg_update(db_session, user, poll)
        await notify(
            db_session, config, user, "Update", "Question", user.actor_id, closed_msg
        )

    return 0


async def was_question_voted(
    db_session: AsyncSession,
    user: LocalUser,
    poll_id: str,
) -> bool:
    """True if the user sent a vote for this poll."""
    for child in await objects.get_children(db_session, poll_id):
        if child.attributed_to == user.actor_id and child.ap_object.get("name"):
            return True
    return False
