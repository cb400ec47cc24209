"""Incoming activities processing.

`process_input_message` runs the checks every incoming activity goes
through (actor, signature, addressing) then applies it to the recipient
state through the `(type, nested type)` handler table.
"""
import enum
from dataclasses import dataclass
from typing import Any
from typing import Awaitable
from typing import Callable

from loguru import logger

from fedbox import activitypub as ap
from fedbox import httpsig
from fedbox import models
from fedbox import objects
from fedbox import users
from fedbox.actor import is_permanent_error
from fedbox.actor import resolve_actor
from fedbox.actor import store_actor
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.users import LocalUser
from fedbox.utils.datetime import isoformat
from fedbox.utils.datetime import now


class InboxStatus(enum.Enum):
    FATAL = "fatal"
    RETRYABLE = "retryable"
    HANDLED = "handled"
    PROPAGATE = "propagate"


class AddressingMatch(enum.Enum):
    OWN_OBJECT = "own_object"
    NOT_A_POST = "not_a_post"
    DIRECT = "direct"
    FOLLOWED_RECIPIENT = "followed_recipient"
    FOLLOWED_AUTHOR = "followed_author"
    REPLY_TO_FOLLOWED = "reply_to_followed"


async def archive_error(
    db_session: AsyncSession,
    kind: str,
    error: str,
    req: dict[str, Any] | None,
    payload: Any,
) -> None:
    logger.warning(f"Archiving {kind} error: {error}")
    db_session.add(
        models.ErrorArchive(kind=kind, error=error, request=req, payload=payload)
    )
    await db_session.flush()


def _author(obj: ap.RawObject) -> str | None:
    for attributed_to in ap.as_list(obj.get("attributedTo")):
        if isinstance(attributed_to, dict):
            attributed_to = attributed_to.get("id")
        if isinstance(attributed_to, str) and attributed_to:
            return attributed_to

    # Profile updates are authored by the actor they describe
    if obj.get("type") in ap.ACTOR_TYPES and isinstance(obj.get("id"), str):
        return obj["id"]

    return None


async def is_msg_for_me(
    db_session: AsyncSession,
    user: LocalUser,
    msg: ap.RawObject,
) -> AddressingMatch | None:
    """Returns why the activity concerns the user, None if it does not."""
    ap_type = msg.get("type")

    if ap_type in ["Like", "Announce"]:
        object_id = ap.get_object_id(msg)
        if not object_id:
            return None

        if user.owns(object_id):
            return AddressingMatch.OWN_OBJECT

        # Admirations from strangers are rejected before anything else
        actor = msg.get("actor")
        if not isinstance(actor, str) or not await users.following_check(
            db_session, user, actor
        ):
            return None

    if ap_type not in ["Create", "Update"]:
        return AddressingMatch.NOT_A_POST

    obj = msg.get("object")
    if not isinstance(obj, dict):
        return None

    for field_name in ["to", "cc"]:
        for rcpt in ap.as_list(obj.get(field_name)):
            if not isinstance(rcpt, str):
                continue

            if rcpt == user.actor_id:
                return AddressingMatch.DIRECT

            # Probably cc'ed
            if await users.following_check(db_session, user, rcpt):
                return AddressingMatch.FOLLOWED_RECIPIENT

    if (author := _author(obj)) and await users.following_check(
        db_session, user, author
    ):
        return AddressingMatch.FOLLOWED_AUTHOR

    in_reply_to = obj.get("inReplyTo")
    if isinstance(in_reply_to, str) and in_reply_to:
        replied = await objects.get_object(db_session, in_reply_to)
        if (
            replied
            and replied.attributed_to
            and await users.following_check(db_session, user, replied.attributed_to)
        ):
            return AddressingMatch.REPLY_TO_FOLLOWED

    return None


@dataclass
class InboxContext:
    db_session: AsyncSession
    config: Config
    user: LocalUser
    msg: ap.RawObject
    req: httpsig.SignedRequest
    actor: str
    ap_type: str
    utype: str | None
    notify: bool = False

    @property
    def obj(self) -> Any:
        return self.msg.get("object")

    @property
    def object_id(self) -> str | None:
        return ap.get_object_id(self.msg)


Handler = Callable[[InboxContext], Awaitable[None]]


async def _handle_follow(ctx: InboxContext) -> None:
    from fedbox.messages import msg_accept
    from fedbox.queue import enqueue_output_by_actor

    if await users.follower_check(ctx.db_session, ctx.user, ctx.actor):
        logger.info(f"repeated Follow from {ctx.actor}")
        return

    follow = dict(ctx.msg)
    reply = msg_accept(ctx.user, follow, ctx.actor)
    await enqueue_output_by_actor(
        ctx.db_session, ctx.config, ctx.user, reply, ctx.actor
    )

    # Mastodon does not date its Follow activities
    if not follow.get("published"):
        follow["published"] = isoformat(now())

    if isinstance(follow_id := follow.get("id"), str):
        await users.timeline_add(ctx.db_session, ctx.user, follow_id, follow)

    await users.follower_add(ctx.db_session, ctx.user, ctx.actor, follow)
    logger.info(f"new follower {ctx.actor}")
    ctx.notify = True


async def _handle_undo_follow(ctx: InboxContext) -> None:
    if await users.follower_del(ctx.db_session, ctx.user, ctx.actor):
        logger.info(f"no longer following us {ctx.actor}")
        ctx.notify = True
    else:
        logger.info(f"error deleting follower {ctx.actor}")


async def _handle_create_note(ctx: InboxContext) -> None:
    from fedbox.polls import update_question
    from fedbox.thread import ensure_in_timeline

    if await users.is_muted(ctx.db_session, ctx.user, ctx.actor):
        logger.info(f"ignored Create + {ctx.utype} from muted actor {ctx.actor}")
        return

    note = ctx.obj
    note_id = note.get("id")
    in_reply_to = note.get("inReplyTo")
    if not isinstance(in_reply_to, str):
        in_reply_to = None

    if in_reply_to and await users.is_hidden(ctx.db_session, ctx.user, in_reply_to):
        logger.info(f"dropped reply {note_id} to hidden post {in_reply_to}")
        return

    if in_reply_to:
        _, in_reply_to = await ensure_in_timeline(
            ctx.db_session, ctx.config, ctx.user, in_reply_to
        )

    if isinstance(note_id, str) and await users.timeline_add(
        ctx.db_session, ctx.user, note_id, note
    ):
        logger.info(f"new Note {ctx.actor} {note_id}")
        ctx.notify = True

    # A named reply is a poll vote
    if note.get("name") and in_reply_to and ctx.user.owns(in_reply_to):
        await update_question(ctx.db_session, ctx.config, ctx.user, in_reply_to)


async def _handle_create_question(ctx: InboxContext) -> None:
    question_id = ctx.obj.get("id")
    if isinstance(question_id, str) and await users.timeline_add(
        ctx.db_session, ctx.user, question_id, ctx.obj
    ):
        logger.info(f"new Question {ctx.actor} {question_id}")


async def _handle_accept_follow(ctx: InboxContext) -> None:
    if await users.following_confirm(ctx.db_session, ctx.user, ctx.actor, ctx.msg):
        logger.info(f"confirmed follow from {ctx.actor}")
    else:
        logger.info(f"spurious follow accept from {ctx.actor}")


async def _handle_accept_other(ctx: InboxContext) -> None:
    await archive_error(
        ctx.db_session, "accept", "ignored Accept", ctx.req.to_dict(), ctx.msg
    )
    logger.info(f"ignored Accept for object type {ctx.utype}")


async def _handle_like(ctx: InboxContext) -> None:
    if not (object_id := ctx.object_id):
        logger.info(f"Like without object from {ctx.actor}")
        return

    if await users.timeline_admire(
        ctx.db_session, ctx.user, object_id, ctx.actor, models.AdmirationKind.LIKE
    ):
        logger.info(f"new Like {ctx.actor} {object_id}")
        ctx.notify = True


async def _handle_announce(ctx: InboxContext) -> None:
    from fedbox.thread import ensure_in_timeline

    object_id = ctx.object_id
    if not object_id:
        logger.info(f"Announce without object from {ctx.actor}")
        return

    if not ctx.user.owns(object_id) and await users.is_limited(
        ctx.db_session, ctx.user, ctx.actor
    ):
        logger.info(f"dropped Announce from limited actor {ctx.actor}")
        return

    _, object_id = await ensure_in_timeline(
        ctx.db_session, ctx.config, ctx.user, object_id
    )
    obj = await objects.get_object(ctx.db_session, object_id) if object_id else None
    if not obj:
        logger.info(f"error requesting Announce object {object_id}")
        return

    who = obj.attributed_to
    if not who or await users.is_muted(ctx.db_session, ctx.user, who):
        logger.info(f"ignored Announce about muted actor {who}")
        return

    status, _ = await resolve_actor(ctx.db_session, ctx.config, who)
    if not ap.is_valid_status(status):
        logger.info(f"dropped Announce on actor request error {who} {status}")
        return

    if await users.timeline_admire(
        ctx.db_session, ctx.user, obj.ap_id, ctx.actor, models.AdmirationKind.ANNOUNCE
    ):
        logger.info(f"new Announce {ctx.actor} {obj.ap_id}")
        ctx.notify = True


async def _handle_update_actor(ctx: InboxContext) -> None:
    if ctx.object_id != ctx.actor:
        logger.warning(f"{ctx.actor} tried to update {ctx.object_id}")
        return

    await store_actor(ctx.db_session, ctx.obj, ctx.actor)
    await users.timeline_touch(ctx.db_session, ctx.user)
    logger.info(f"updated actor {ctx.actor}")


async def _handle_update_post(ctx: InboxContext) -> None:
    post_id = ctx.object_id
    if post_id and await objects.object_here(ctx.db_session, post_id):
        await objects.overwrite_object(ctx.db_session, ctx.obj, post_id)
        await users.timeline_touch(ctx.db_session, ctx.user)
        logger.info(f"updated post {post_id}")
    else:
        logger.info(f"dropped update for unknown post {post_id}")


async def _handle_update_question(ctx: InboxContext) -> None:
    if not (poll_id := ctx.object_id):
        return

    await objects.overwrite_object(ctx.db_session, ctx.obj, poll_id)
    await users.timeline_touch(ctx.db_session, ctx.user)

    closed = ctx.obj.get("closed")
    logger.info(f"{'closed' if closed else 'updated'} poll {poll_id}")
    if closed:
        ctx.notify = True


async def _handle_delete(ctx: InboxContext) -> None:
    if not (object_id := ctx.object_id):
        return

    obj = await objects.get_object(ctx.db_session, object_id)
    if obj and obj.attributed_to and obj.attributed_to != ctx.actor:
        logger.warning(f"{ctx.actor} tried to delete {object_id}")
        return

    if await users.timeline_del(ctx.db_session, ctx.user, object_id):
        logger.info(f"new Delete {ctx.actor} {object_id}")
    else:
        logger.debug(f"ignored Delete for unknown object {object_id}")


async def _handle_ping(ctx: InboxContext) -> None:
    from fedbox.messages import msg_pong
    from fedbox.outbox import post_message

    logger.info(f"Ping requested from {ctx.actor}")
    pong = msg_pong(ctx.user, ctx.actor, ctx.msg.get("id"))
    await post_message(ctx.db_session, ctx.config, ctx.user, ctx.actor, pong)


async def _handle_pong(ctx: InboxContext) -> None:
    logger.info(f"Pong received from {ctx.actor}")


async def _ignore(ctx: InboxContext) -> None:
    logger.debug(f"ignored {ctx.ap_type} for object type {ctx.utype}")


ANY = "*"

# Ordered, the first matching entry wins
HANDLERS: list[tuple[str, str | tuple[str | None, ...], Handler]] = [
    ("Follow", ANY, _handle_follow),
    ("Undo", ("Follow",), _handle_undo_follow),
    ("Undo", ANY, _ignore),
    ("Create", ("Note",), _handle_create_note),
    ("Create", ("Question",), _handle_create_question),
    ("Create", ANY, _ignore),
    ("Accept", ("Follow",), _handle_accept_follow),
    # Some servers confirm Creates
    ("Accept", ("Create",), _ignore),
    ("Accept", ANY, _handle_accept_other),
    ("Like", ANY, _handle_like),
    ("Announce", ANY, _handle_announce),
    ("Update", ("Person", "Service"), _handle_update_actor),
    ("Update", tuple(ap.POST_TYPES), _handle_update_post),
    ("Update", ("Question",), _handle_update_question),
    ("Update", ANY, _ignore),
    ("Delete", ANY, _handle_delete),
    ("Ping", ANY, _handle_ping),
    ("Pong", ANY, _handle_pong),
]


def find_handler(ap_type: str, utype: str | None) -> Handler:
    for handler_type, handler_utypes, handler in HANDLERS:
        if handler_type != ap_type:
            continue
        if handler_utypes == ANY or utype in handler_utypes:
            return handler

    return _ignore


def infer_nested_type(
    config: Config,
    ap_type: str,
    utype: str | None,
    obj: Any,
) -> str | None:
    """An Accept of a bare ID this server could have minted is a follow."""
    if (
        ap_type == "Accept"
        and utype is None
        and isinstance(obj, str)
        and obj.startswith(config.base_url)
        and obj.endswith("/Follow")
    ):
        return "Follow"
    return utype


async def _check_signature(
    db_session: AsyncSession,
    config: Config,
    actor: str,
    msg: ap.RawObject,
    req: httpsig.SignedRequest | None,
) -> bool:
    if req is None:
        await archive_error(db_session, "check_signature", "no request", None, msg)
        return False

    httpsig_info = await httpsig.verify_signed_request(db_session, config, req)
    if not httpsig_info.has_valid_signature:
        error = httpsig_info.error
    elif httpsig_info.signed_by_ap_actor_id != actor:
        error = f"signed by {httpsig_info.signed_by_ap_actor_id}"
    else:
        return True

    logger.info(f"bad signature {actor} ({error})")
    await archive_error(db_session, "check_signature", error, req.to_dict(), msg)
    return False


async def _process_input_message(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser | None,
    msg: ap.RawObject,
    req: httpsig.SignedRequest | None,
) -> InboxStatus:
    actor = msg.get("actor")
    if not isinstance(actor, str) or not actor:
        logger.info("malformed message (bad actor)")
        return InboxStatus.FATAL

    # Poll votes may not have a type
    ap_type = msg.get("type") or "Note"
    if ap_type == "Add":
        logger.debug(f"ignored message of type {ap_type}")
        return InboxStatus.FATAL

    obj = msg.get("object")
    utype = obj.get("type") if isinstance(obj, dict) else None

    if ap_type == "Delete" and not await objects.object_here(db_session, actor):
        logger.debug(f"dropped Delete from unknown actor {actor}")
        return InboxStatus.FATAL

    a_status, _ = await resolve_actor(db_session, config, actor)
    if is_permanent_error(a_status):
        logger.info(f"dropping message due to actor error {actor} {a_status}")
        return InboxStatus.FATAL

    if not ap.is_valid_status(a_status):
        if ap_type == "Delete":
            logger.info(f"dropping Delete due to actor error {actor} {a_status}")
            return InboxStatus.FATAL

        logger.info(f"error requesting actor {actor} {a_status}, retry later")
        return InboxStatus.RETRYABLE

    if not await _check_signature(db_session, config, actor, msg, req):
        return InboxStatus.FATAL

    if user is None:
        return InboxStatus.PROPAGATE

    if not await is_msg_for_me(db_session, user, msg):
        logger.info(f"message from {actor} of type {ap_type} not for {user.uid}")
        return InboxStatus.HANDLED

    if (
        user.config.drop_dm_from_unknown
        and utype == "Note"
        and not ap.is_public(msg)
        and not await users.following_check(db_session, user, actor)
    ):
        logger.warning(f"DM rejected from unknown actor {actor}")
        return InboxStatus.HANDLED

    utype = infer_nested_type(config, ap_type, utype, obj)

    ctx = InboxContext(
        db_session=db_session,
        config=config,
        user=user,
        msg=msg,
        req=req,  # type: ignore
        actor=actor,
        ap_type=ap_type,
        utype=utype,
    )
    await find_handler(ap_type, utype)(ctx)

    if ctx.notify:
        from fedbox.notifications import notify

        await notify(db_session, config, user, ap_type, utype, actor, msg)
        await users.timeline_touch(db_session, user)

    return InboxStatus.HANDLED


async def process_input_message(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser | None,
    msg: ap.RawObject,
    req: httpsig.SignedRequest | None,
) -> InboxStatus:
    """Processes an incoming activity for a user, or for the instance.

    Without a user, only the instance-level checks are done and a
    successful outcome is `InboxStatus.PROPAGATE`.
    """
    status = await _process_input_message(db_session, config, user, msg, req)
    logger.info(
        f"inbox {user.uid if user else '[shared]'} {msg.get('type')} "
        f"actor={msg.get('actor')} object={ap.get_object_id(msg)} -> {status.value}"
    )
    return status
