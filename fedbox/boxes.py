"""Actions of local users: everything they author goes through here."""
from loguru import logger

from fedbox import activitypub as ap
from fedbox import instances
from fedbox import messages
from fedbox import models
from fedbox import users
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.queue import enqueue_close_question
from fedbox.queue import enqueue_message
from fedbox.queue import enqueue_output_by_actor
from fedbox.users import LocalUser
from fedbox.utils.datetime import parse_isoformat
from fedbox.webfinger import resolve_handle


async def _resolve_actor_id(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    query: str,
) -> str:
    if query.startswith("https://") or query.startswith("http://"):
        return query

    status, actor_id, _ = await resolve_handle(db_session, config, query, user)
    if not ap.is_valid_status(status) or not actor_id:
        raise ValueError(f"Cannot resolve {query}: {status}")

    return actor_id


async def send_follow(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    query: str,
) -> ap.RawObject:
    follow = await messages.msg_follow(db_session, config, user, query)
    if not follow:
        raise ValueError(f"Cannot follow {query}")

    actor_id = follow["object"]
    await users.following_add(db_session, user, actor_id, follow)
    await enqueue_output_by_actor(db_session, config, user, follow, actor_id)
    logger.info(f"{user.uid} requested to follow {actor_id}")

    await db_session.commit()
    return follow


def _follow_activity(user: LocalUser, following: models.Following) -> ap.RawObject:
    """Returns the Follow sent for an edge, once accepted it is nested."""
    stored = following.ap_object or {}
    if stored.get("type") == "Follow":
        return stored

    if stored.get("type") == "Accept" and isinstance(stored.get("object"), dict):
        return stored["object"]

    return {
        "id": stored.get("object") if isinstance(stored.get("object"), str) else None,
        "type": "Follow",
        "actor": user.actor_id,
        "object": following.ap_actor_id,
    }


async def send_unfollow(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    actor_id: str,
) -> ap.RawObject:
    following = await users.get_following(db_session, user, actor_id)
    if not following:
        raise ValueError(f"{user.uid} is not following {actor_id}")

    undo = messages.msg_undo(user, _follow_activity(user, following))
    await users.following_del(db_session, user, actor_id)
    await enqueue_output_by_actor(db_session, config, user, undo, actor_id)
    logger.info(f"{user.uid} unfollowed {actor_id}")

    await db_session.commit()
    return undo


async def send_note(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    content: str,
    rcpts: list[str] | None = None,
    in_reply_to: str | None = None,
    attachments: list[tuple[str, str]] | None = None,
    private: bool = False,
) -> ap.RawObject:
    note = await messages.msg_note(
        db_session, config, user, content, rcpts, in_reply_to, attachments, private
    )
    create = messages.msg_create(user, note)

    await users.timeline_add(db_session, user, note["id"], note)
    await enqueue_message(db_session, user, create)

    await db_session.commit()
    return note


async def send_question(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    content: str,
    options: list[str],
    multiple: bool = False,
    end_secs: int = 60 * 60 * 24,
) -> ap.RawObject:
    question = await messages.msg_question(
        db_session, config, user, content, options, multiple, end_secs
    )
    create = messages.msg_create(user, question)

    await users.timeline_add(db_session, user, question["id"], question)
    await enqueue_message(db_session, user, create)
    await enqueue_close_question(
        db_session, user, question["id"], parse_isoformat(question["endTime"])
    )

    await db_session.commit()
    return question


async def _send_admiration(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    object_id: str,
    ap_type: str,
    kind: models.AdmirationKind,
) -> ap.RawObject:
    msg = await messages.msg_admiration(db_session, config, user, object_id, ap_type)
    if not msg:
        raise ValueError(f"Cannot {ap_type} {object_id}")

    await users.timeline_admire(db_session, user, msg["object"], user.actor_id, kind)
    await enqueue_message(db_session, user, msg)

    await db_session.commit()
    return msg


async def send_like(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    object_id: str,
) -> ap.RawObject:
    return await _send_admiration(
        db_session, config, user, object_id, "Like", models.AdmirationKind.LIKE
    )


async def send_announce(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    object_id: str,
) -> ap.RawObject:
    return await _send_admiration(
        db_session,
        config,
        user,
        object_id,
        "Announce",
        models.AdmirationKind.ANNOUNCE,
    )


async def send_ping(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    query: str,
) -> ap.RawObject:
    actor_id = await _resolve_actor_id(db_session, config, user, query)
    ping = messages.msg_ping(user, actor_id)
    await enqueue_message(db_session, user, ping)

    await db_session.commit()
    return ping


async def send_update_profile(
    db_session: AsyncSession,
    user: LocalUser,
) -> ap.RawObject:
    update = await messages.msg_update(db_session, user, messages.msg_actor(user))
    await enqueue_message(db_session, user, update)

    await db_session.commit()
    return update


async def send_delete(
    db_session: AsyncSession,
    user: LocalUser,
    ap_id: str,
) -> ap.RawObject:
    if not user.owns(ap_id):
        raise ValueError(f"{ap_id} is not owned by {user.uid}")

    delete = messages.msg_delete(user, ap_id)
    await users.timeline_del(db_session, user, ap_id)
    await enqueue_message(db_session, user, delete)

    await db_session.commit()
    return delete


# Moderation toggles


async def block(db_session: AsyncSession, url_or_hostname: str) -> bool:
    blocked = await instances.instance_block(db_session, url_or_hostname)
    await db_session.commit()
    return blocked


async def unblock(db_session: AsyncSession, url_or_hostname: str) -> bool:
    unblocked = await instances.instance_unblock(db_session, url_or_hostname)
    await db_session.commit()
    return unblocked


async def mute(db_session: AsyncSession, user: LocalUser, actor_id: str) -> None:
    await users.mute(db_session, user, actor_id)
    await db_session.commit()


async def unmute(db_session: AsyncSession, user: LocalUser, actor_id: str) -> None:
    await users.unmute(db_session, user, actor_id)
    await db_session.commit()


async def limit(db_session: AsyncSession, user: LocalUser, actor_id: str) -> None:
    await users.limit(db_session, user, actor_id)
    await db_session.commit()


async def unlimit(db_session: AsyncSession, user: LocalUser, actor_id: str) -> None:
    await users.unlimit(db_session, user, actor_id)
    await db_session.commit()


async def hide(db_session: AsyncSession, user: LocalUser, ap_id: str) -> None:
    await users.hide(db_session, user, ap_id)
    await db_session.commit()
