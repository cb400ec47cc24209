import json
from typing import Any
from typing import MutableMapping
from urllib.parse import urlencode
from urllib.parse import urlparse

from cachetools import TTLCache
from loguru import logger

from fedbox import activitypub as ap
from fedbox.config import AP_CONTENT_TYPE
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.users import LocalUser
from fedbox.users import get_user
from fedbox.users import get_user_by_actor_id

_AP_LINK_TYPES = [
    AP_CONTENT_TYPE,
    'application/ld+json; profile="https://www.w3.org/ns/activitystreams"',
]

# Successful remote lookups, keyed by the original query
_WEBFINGER_CACHE: MutableMapping[str, tuple[str, str]] = TTLCache(
    maxsize=1024, ttl=60 * 60 * 24
)


def _parse_query(qs: str) -> tuple[str | None, str]:
    """Returns (host, resource) for a handle or an actor URL."""
    qs = qs.strip()
    if qs.startswith("https://") or qs.startswith("http://"):
        return urlparse(qs).hostname, qs

    if qs.startswith("acct:"):
        qs = qs[5:]
    qs = qs.strip("@.")

    if "@" not in qs:
        return None, f"acct:{qs}"

    _, host = qs.split("@", 1)
    return host.lower(), f"acct:{qs}"


async def webfinger_response(
    db_session: AsyncSession,
    config: Config,
    resource: str,
) -> dict[str, Any] | None:
    """Builds the JRD document for a local user, None if unknown."""
    user: LocalUser | None = None
    if resource.startswith("https://") or resource.startswith("http://"):
        user = await get_user_by_actor_id(db_session, config, resource)
    elif resource.startswith("acct:"):
        acct = resource[5:].lstrip("@")
        if "@" in acct:
            uid, host = acct.split("@", 1)
            if config.is_local_host(host.lower()):
                user = await get_user(db_session, config, uid)

    if not user:
        logger.info(f"webfinger: no local user for {resource}")
        return None

    return {
        "subject": f"acct:{user.uid}@{config.host}",
        "aliases": [user.actor_id],
        "links": [
            {
                "rel": "self",
                "type": AP_CONTENT_TYPE,
                "href": user.actor_id,
            },
        ],
    }


def _parse_jrd(data: dict[str, Any]) -> tuple[str | None, str | None]:
    handle = None
    if isinstance(subject := data.get("subject"), str):
        handle = subject[5:] if subject.startswith("acct:") else subject

    actor_id = None
    for link in ap.as_list(data.get("links")):
        if not isinstance(link, dict):
            continue
        if link.get("rel", "self") == "self" and link.get("type") in _AP_LINK_TYPES:
            actor_id = link.get("href")
            break

    return actor_id, handle


async def resolve_handle(
    db_session: AsyncSession,
    config: Config,
    qs: str,
    user: LocalUser | None = None,
) -> tuple[int, str | None, str | None]:
    """Mastodon-like WebFinger resolution.

    Returns (status, actor ID, canonical handle without the acct: prefix).
    Handles of local users (or of the configured host aliases) are resolved
    without any network round trip.
    """
    host, resource = _parse_query(qs)
    logger.info(f"performing webfinger resolution for {resource}")
    if not host:
        return 400, None, None

    if config.is_local_host(host):
        data = await webfinger_response(db_session, config, resource)
        if not data:
            return 404, None, None
        actor_id, handle = _parse_jrd(data)
        return 200, actor_id, handle

    if cached := _WEBFINGER_CACHE.get(qs):
        logger.debug(f"webfinger cache hit for {qs}")
        return 200, cached[0], cached[1]

    url = f"{config.webfinger_scheme}://{host}/.well-known/webfinger?" + urlencode(
        {"resource": resource}
    )
    result = await ap.request(
        config,
        "GET",
        url,
        key=user.key if user else None,
        headers={"Accept": "application/jrd+json, application/json"},
    )
    if not result.is_success:
        logger.info(f"webfinger for {resource} failed: {result.status}")
        return result.status, None, None

    try:
        data = json.loads(result.text)
    except json.JSONDecodeError:
        logger.info(f"webfinger for {resource} returned invalid JSON")
        return 400, None, None

    if not isinstance(data, dict):
        return 400, None, None

    actor_id, handle = _parse_jrd(data)
    if not actor_id:
        return 404, None, handle

    _WEBFINGER_CACHE[qs] = (actor_id, handle or "")
    return result.status, actor_id, handle
