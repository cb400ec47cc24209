"""Builders for the activities authored by local users."""
import enum
import re
import uuid
from datetime import timedelta
from typing import Any

from loguru import logger

from fedbox import activitypub as ap
from fedbox import objects
from fedbox import users
from fedbox.actor import resolve_actor
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.users import LocalUser
from fedbox.utils.datetime import isoformat
from fedbox.utils.datetime import now
from fedbox.webfinger import resolve_handle

_HASHTAG_REGEX = re.compile(r"(#[\d\w]+)")
_MENTION_REGEX = re.compile(r"(@[\d\w_]+(?:@[\d\w-]+\.[\d\w\-.]*[\d\w])?)")

MAX_POLL_OPTIONS = 8
MAX_POLL_OPTION_LENGTH = 60


class IdMode(str, enum.Enum):
    # {actor}/d/{tid}/{type}
    DUMMY = "dummy"
    # {object_id}/{type}_{tid}
    OBJECT = "object"
    # {object_id}/{type}, always the same for a given object
    WRAPPER = "wrapper"


def allocate_tid() -> str:
    return uuid.uuid4().hex


def msg_base(
    user: LocalUser,
    ap_type: str,
    ap_id: str | IdMode | None = None,
    actor: str | None = None,
    published: str | None = None,
    obj: str | ap.RawObject | None = None,
    with_date: bool = False,
) -> ap.RawObject:
    obj_id: str | None
    if isinstance(obj, dict):
        obj_id = obj.get("id")
    else:
        obj_id = obj

    if with_date:
        published = isoformat(now())

    if ap_id == IdMode.DUMMY:
        ap_id = f"{user.actor_id}/d/{allocate_tid()}/{ap_type}"
    elif ap_id == IdMode.OBJECT:
        ap_id = f"{obj_id}/{ap_type}_{allocate_tid()}" if obj_id else None
    elif ap_id == IdMode.WRAPPER:
        if obj_id:
            if isinstance(obj, dict):
                published = obj.get("published")
            ap_id = f"{obj_id}/{ap_type}"
        else:
            ap_id = None

    msg: ap.RawObject = {"@context": ap.AS_CTX, "type": ap_type}
    if ap_id is not None:
        msg["id"] = ap_id
    if actor is not None:
        msg["actor"] = actor
    if published is not None:
        msg["published"] = published
    if obj is not None:
        msg["object"] = obj

    return msg


def msg_collection(user: LocalUser, ap_id: str) -> ap.RawObject:
    msg = msg_base(user, "OrderedCollection", ap_id)
    msg["attributedTo"] = user.actor_id
    msg["orderedItems"] = []
    msg["totalItems"] = 0
    return msg


def msg_actor(user: LocalUser) -> ap.RawObject:
    config = user.server_config
    msg = msg_base(user, "Person", user.actor_id)
    msg["@context"] = ap.AS_EXTENDED_CTX

    msg["url"] = user.actor_id
    msg["name"] = user.config.name or user.uid
    msg["preferredUsername"] = user.uid
    msg["published"] = isoformat(user.user.created_at)
    msg["summary"] = user.config.bio
    msg["tag"] = []

    for folder in ["inbox", "outbox", "followers", "following"]:
        msg[folder] = f"{user.actor_id}/{folder}"

    msg["publicKey"] = {
        "id": user.key.key_id(),
        "owner": user.actor_id,
        "publicKeyPem": user.key.pubkey_pem,
    }

    if user.config.bot:
        msg["type"] = "Service"

    if config.shared_inboxes:
        msg["endpoints"] = {"sharedInbox": f"{config.base_url}/shared-inbox"}

    return msg


def msg_accept(user: LocalUser, obj: str | ap.RawObject, to: str) -> ap.RawObject:
    msg = msg_base(user, "Accept", IdMode.DUMMY, user.actor_id, obj=obj)
    msg["to"] = to
    return msg


async def msg_update(
    db_session: AsyncSession,
    user: LocalUser,
    obj: ap.RawObject,
) -> ap.RawObject:
    msg = msg_base(user, "Update", IdMode.OBJECT, user.actor_id, obj=obj, with_date=True)

    ap_type = obj.get("type")
    if ap_type == "Note":
        msg["to"] = obj.get("to")
        msg["cc"] = obj.get("cc")
    elif ap_type == "Person":
        msg["to"] = ap.AS_PUBLIC
        # Let the followed accounts know about the new profile too
        msg["cc"] = await users.following_list(db_session, user)
    else:
        msg["to"] = ap.AS_PUBLIC

    return msg


async def msg_admiration(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    object_id: str,
    ap_type: str,
) -> ap.RawObject | None:
    """Builds a Like or an Announce, None when the object can't be fetched."""
    from fedbox.thread import ensure_in_timeline

    _, object_id = await ensure_in_timeline(
        db_session, config, user, object_id, max_depth=1
    )
    obj = await objects.get_object(db_session, object_id) if object_id else None
    if not obj:
        logger.info(f"msg_admiration cannot retrieve object {object_id}")
        return None

    msg = msg_base(
        user, ap_type, IdMode.DUMMY, user.actor_id, obj=object_id, with_date=True
    )

    rcpts = []
    if ap.is_public(obj.ap_object):
        rcpts.append(ap.AS_PUBLIC)
    rcpts.append(obj.ap_object.get("attributedTo"))
    msg["to"] = rcpts

    return msg


def msg_create(user: LocalUser, obj: ap.RawObject) -> ap.RawObject:
    msg = msg_base(user, "Create", IdMode.WRAPPER, user.actor_id, obj=obj)

    if attributed_to := obj.get("attributedTo"):
        msg["attributedTo"] = attributed_to
    if cc := obj.get("cc"):
        msg["cc"] = cc

    msg["to"] = obj.get("to") or ap.AS_PUBLIC
    return msg


def msg_undo(user: LocalUser, obj: str | ap.RawObject) -> ap.RawObject:
    msg = msg_base(user, "Undo", IdMode.OBJECT, user.actor_id, obj=obj, with_date=True)
    if isinstance(obj, dict) and (to := obj.get("object")):
        msg["to"] = to
    return msg


def msg_delete(user: LocalUser, ap_id: str) -> ap.RawObject:
    tombstone = {"type": "Tombstone", "id": ap_id}
    msg = msg_base(
        user, "Delete", IdMode.OBJECT, user.actor_id, obj=tombstone, with_date=True
    )
    msg["to"] = ap.AS_PUBLIC
    return msg


async def msg_follow(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    query: str,
) -> ap.RawObject | None:
    """Builds a Follow for a handle or an actor URL, None if unresolvable."""
    query = query.strip()

    actor_id: str | None
    if query.startswith("https:/"):
        actor_id = query
    else:
        status, actor_id, _ = await resolve_handle(db_session, config, query, user)
        if not ap.is_valid_status(status) or not actor_id:
            logger.info(f"cannot resolve user {query} to follow")
            return None

    status, ap_actor = await resolve_actor(db_session, config, actor_id)
    if not ap.is_valid_status(status) or not ap_actor:
        logger.info(f"cannot get actor to follow {actor_id} {status}")
        return None

    if (r_actor := ap_actor.get("id")) != actor_id:
        logger.info(f"actor to follow is an alias {actor_id} -> {r_actor}")

    return msg_base(user, "Follow", IdMode.DUMMY, user.actor_id, obj=r_actor)


async def _process_tags(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    content: str,
    tags: list[dict[str, str]],
) -> str:
    """Links mentions and hashtags found in the content, appending to `tags`."""
    # Mentions without a server default to the one of the replied author
    default_server = config.host
    for tag in tags:
        if tag.get("type") == "Mention" and tag.get("name"):
            default_server = tag["name"].split("@")[-1]
            break

    mentions: dict[str, str] = {}
    for mention in set(_MENTION_REGEX.findall(content)):
        wuid = mention if mention.count("@") > 1 else f"{mention}@{default_server}"

        status, actor_id, handle = await resolve_handle(
            db_session, config, wuid, user
        )
        if not ap.is_valid_status(status) or not actor_id:
            logger.info(f"cannot resolve mention {wuid}")
            continue

        name = f"@{handle}"
        tags.append({"type": "Mention", "href": actor_id, "name": name})
        mentions[mention] = f'<a href="{actor_id}" class="u-url mention">{name}</a>'

    def _replace_mention(match: re.Match) -> str:
        return mentions.get(match.group(0), match.group(0))

    content = _MENTION_REGEX.sub(_replace_mention, content)

    def _replace_hashtag(match: re.Match) -> str:
        tag = match.group(0)
        href = f"{config.base_url}/t/{tag[1:].lower()}"
        tags.append({"type": "Hashtag", "href": href, "name": tag.lower()})
        return f'<a href="{href}" class="mention hashtag" rel="tag">{tag}</a>'

    return _HASHTAG_REGEX.sub(_replace_hashtag, content)


async def msg_note(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    content: str,
    rcpts: str | list[str] | None = None,
    in_reply_to: str | None = None,
    attachments: list[tuple[str, str]] | None = None,
    private: bool = False,
) -> ap.RawObject:
    from fedbox.thread import ensure_in_timeline

    note_id = f"{user.actor_id}/p/{allocate_tid()}"
    msg = msg_base(user, "Note", note_id, with_date=True)

    to = list(ap.as_list(rcpts))
    cc: list[str] = []
    tags: list[dict[str, Any]] = []
    context: str | None = None

    if in_reply_to:
        _, in_reply_to = await ensure_in_timeline(
            db_session, config, user, in_reply_to, max_depth=1
        )
        if in_reply_to and (
            parent := await objects.get_object(db_session, in_reply_to)
        ):
            p_msg = parent.ap_object

            author = p_msg.get("attributedTo")
            if isinstance(author, str):
                if author not in to:
                    to.append(author)

                status, href, handle = await resolve_handle(
                    db_session, config, author, user
                )
                if ap.is_valid_status(status) and href:
                    tags.append({"type": "Mention", "href": href, "name": handle})

            context = p_msg.get("context")
            if conversation := p_msg.get("conversation"):
                msg["conversation"] = conversation

            # Replies to public posts are public too
            if not private and ap.is_public(p_msg) and ap.AS_PUBLIC not in to:
                to.append(ap.AS_PUBLIC)

    formatted_content = await _process_tags(db_session, config, user, content, tags)

    atls = []
    for url, alt in attachments or []:
        media_type = _media_type(url)
        atls.append(
            {
                "mediaType": media_type,
                "url": url,
                "name": alt,
                "type": "Image" if media_type.startswith("image/") else "Document",
            }
        )

    for tag in tags:
        if tag.get("type") == "Mention" and (href := tag.get("href")):
            cc.append(href)

    # No recipients means a post for everybody
    if not private and not to:
        to.append(ap.AS_PUBLIC)

    cc = [rcpt for rcpt in dict.fromkeys(cc) if rcpt not in to]

    msg.update(
        {
            "attributedTo": user.actor_id,
            "summary": "",
            "content": formatted_content,
            "context": context or f"{note_id}#ctxt",
            "url": note_id,
            "to": to,
            "cc": cc,
            "inReplyTo": in_reply_to,
            "tag": tags,
            "sourceContent": content,
        }
    )
    if atls:
        msg["attachment"] = atls

    return msg


def _media_type(url: str) -> str:
    ext = url.rsplit(".", 1)[-1].lower()
    return {
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "png": "image/png",
        "gif": "image/gif",
        "webp": "image/webp",
        "mp4": "video/mp4",
        "webm": "video/webm",
        "mp3": "audio/mpeg",
    }.get(ext, "application/octet-stream")


def msg_ping(user: LocalUser, rcpt: str) -> ap.RawObject:
    msg = msg_base(user, "Ping", IdMode.DUMMY, user.actor_id)
    msg["to"] = rcpt
    return msg


def msg_pong(user: LocalUser, rcpt: str, obj: str | None) -> ap.RawObject:
    msg = msg_base(user, "Pong", IdMode.DUMMY, user.actor_id, obj=obj)
    msg["to"] = rcpt
    return msg


async def msg_question(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    content: str,
    options: list[str],
    multiple: bool = False,
    end_secs: int = 60 * 60 * 24,
) -> ap.RawObject:
    msg = await msg_note(db_session, config, user, content)
    msg["type"] = "Question"

    # Polls can't be edited
    del msg["sourceContent"]

    seen: set[str] = set()
    choices = []
    for option in options:
        if len(choices) >= MAX_POLL_OPTIONS:
            break
        if not option:
            continue

        if len(option) > MAX_POLL_OPTION_LENGTH:
            option = option[:MAX_POLL_OPTION_LENGTH] + "..."

        if option in seen:
            continue
        seen.add(option)

        choices.append(
            {
                "type": "Note",
                "name": option,
                "replies": {"type": "Collection", "totalItems": 0},
            }
        )

    msg["anyOf" if multiple else "oneOf"] = choices
    msg["endTime"] = isoformat(now() + timedelta(seconds=end_secs))
    return msg
