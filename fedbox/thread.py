from loguru import logger

from fedbox import activitypub as ap
from fedbox import objects
from fedbox import users
from fedbox.actor import resolve_actor
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.users import LocalUser


def _unwrap(data: ap.RawObject) -> tuple[ap.RawObject, str | None, str | None]:
    """Returns (object, type, id), unwrapping a single Create level."""
    obj = data
    ap_type = data.get("type")
    ap_id = data.get("id")

    # Some servers nest Announce + Create + Note
    if ap_type == "Create":
        if isinstance(inner := data.get("object"), dict):
            obj = inner
            ap_type = inner.get("type")
            ap_id = inner.get("id")
        else:
            ap_type = None

    return obj, ap_type, ap_id if isinstance(ap_id, str) else None


async def ensure_in_timeline(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser | None,
    activity_id: str | None,
    max_depth: int | None = None,
) -> tuple[int, str | None]:
    """Ensures an entry and its reply ancestors are stored.

    Walks the `inReplyTo` chain with an explicit worklist, each item carrying
    its depth, and stops at `max_depth` (or on an ID already visited).

    Returns (status, canonical ID). The status is the one of the first
    fetch, 200 when the entry was already known. The canonical ID is the
    one found in the fetched body and replaces the requested one.
    """
    if not activity_id:
        return 0, activity_id

    if max_depth is None:
        max_depth = config.max_thread_depth

    root_status = 200
    canonical_id: str = activity_id
    visited: set[str] = set()
    worklist: list[tuple[str, int]] = [(activity_id, 0)]

    while worklist:
        current_id, depth = worklist.pop()
        if depth >= max_depth:
            logger.info(f"Thread depth limit reached at {current_id}")
            continue

        if current_id in visited:
            logger.info(f"Thread loop detected at {current_id}")
            continue
        visited.add(current_id)

        if await objects.get_object(db_session, current_id):
            continue

        status, data = await ap.activitypub_request(
            config, current_id, key=user.key if user else None
        )
        if depth == 0:
            root_status = status

        if not ap.is_valid_status(status) or not data:
            logger.info(f"Failed to fetch {current_id}: {status}")
            continue

        fetched_id = data.get("id")
        if not isinstance(fetched_id, str):
            continue

        if fetched_id != current_id:
            logger.info(f"Canonical ID for {current_id} is {fetched_id}")
            if depth == 0:
                canonical_id = fetched_id
            visited.add(fetched_id)

        obj, ap_type, obj_id = _unwrap(data)
        logger.debug(f"Fetched {obj_id} {ap_type=} {depth=}")

        if ap_type not in ap.POST_TYPES or not obj_id:
            continue

        # Warm the actor cache for the author
        if isinstance(attributed_to := obj.get("attributedTo"), str):
            await resolve_actor(db_session, config, attributed_to)

        if user:
            await users.timeline_add(db_session, user, obj_id, obj)
        else:
            await objects.save_object(db_session, obj, obj_id)

        in_reply_to = obj.get("inReplyTo")
        if isinstance(in_reply_to, str) and in_reply_to:
            worklist.append((in_reply_to, depth + 1))

    if user:
        from fedbox.queue import enqueue_request_replies

        await enqueue_request_replies(db_session, user, canonical_id)

    return root_status, canonical_id


async def request_replies(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    ap_id: str,
) -> int:
    """Fetches the first page of an object's replies collection.

    Embedded replies are only kept when they point to their parent, the
    others are resolved as threads. Returns the number of replies seen.
    """
    obj = await objects.get_object(db_session, ap_id)
    if not obj:
        return 0

    replies = obj.ap_object.get("replies")
    if not isinstance(replies, dict) or replies.get("type") not in [
        "Collection",
        "OrderedCollection",
    ]:
        return 0

    first = replies.get("first")
    if not isinstance(first, dict) or not isinstance(
        next_page := first.get("next"), str
    ):
        return 0

    status, page = await ap.activitypub_request(config, next_page, key=user.key)
    if not ap.is_valid_status(status) or not page:
        logger.info(f"replies request error {next_page} {status}")
        return 0

    count = 0
    for item in ap.as_list(page.get("items") or page.get("orderedItems")):
        if isinstance(item, dict):
            if isinstance(item.get("id"), str) and item.get("inReplyTo"):
                logger.debug(f"embedded reply {item['id']}")
                await objects.save_object(db_session, item)
                count += 1
        elif isinstance(item, str):
            logger.debug(f"request reply {item}")
            await ensure_in_timeline(db_session, config, user, item, max_depth=1)
            count += 1

    return count
