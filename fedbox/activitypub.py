import json
import socket
from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING
from typing import Any

import httpx
from loguru import logger

from fedbox.config import AP_CONTENT_TYPE
from fedbox.config import USER_AGENT
from fedbox.config import Config
from fedbox.httpsig import HTTPXSigAuth
from fedbox.utils.url import InvalidURLError
from fedbox.utils.url import check_url

if TYPE_CHECKING:
    from fedbox.key import Key

RawObject = dict[str, Any]
AS_CTX = "https://www.w3.org/ns/activitystreams"
AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"

ACTOR_TYPES = ["Application", "Group", "Organization", "Person", "Service"]
POST_TYPES = ["Note", "Page", "Article"]

AS_EXTENDED_CTX = [
    "https://www.w3.org/ns/activitystreams",
    "https://w3id.org/security/v1",
    {
        "manuallyApprovesFollowers": "as:manuallyApprovesFollowers",
        "toot": "http://joinmastodon.org/ns#",
        "votersCount": "toot:votersCount",
        "ostatus": "http://ostatus.org#",
        "conversation": "ostatus:conversation",
    },
]

# Statuses produced by the transport itself
CONNECTION_ERROR_STATUS = -1
TIMEOUT_STATUS = 599


class FetchError(Exception):
    def __init__(self, url: str, status: int | None = None) -> None:
        status_part = ""
        if status is not None:
            status_part = f", got status {status}"
        message = f"Failed to fetch {url}{status_part}"
        super().__init__(message)
        self.status = status
        self.url = url


class ObjectIsGoneError(FetchError):
    pass


class ObjectNotFoundError(FetchError):
    pass


class ObjectUnavailableError(FetchError):
    pass


class NotAnObjectError(FetchError):
    pass


@dataclass(frozen=True)
class FetchResult:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    text: str = ""

    @property
    def is_success(self) -> bool:
        return is_valid_status(self.status)


def is_valid_status(status: int) -> bool:
    return 200 <= status <= 299


async def request(
    config: Config,
    method: str,
    url: str,
    key: "Key | None" = None,
    headers: dict[str, str] | None = None,
    payload: RawObject | None = None,
    timeout: float | None = None,
) -> FetchResult:
    """Performs a single HTTP request, signed when a key is given.

    Never raises on network errors: connection failures are reported as
    a negative status and timeouts as `TIMEOUT_STATUS`.
    """
    try:
        check_url(url, config.debug)
    except (InvalidURLError, socket.gaierror):
        logger.warning(f"Refusing to {method} {url}")
        return FetchResult(status=CONNECTION_ERROR_STATUS)

    req_headers = {"User-Agent": USER_AGENT}
    if headers:
        req_headers.update(headers)

    content = None
    if payload is not None:
        content = json.dumps(payload).encode()
        req_headers.setdefault("Content-Type", AP_CONTENT_TYPE)

    try:
        async with httpx.AsyncClient() as client:
            resp = await client.request(
                method,
                url,
                headers=req_headers,
                content=content,
                follow_redirects=method == "GET",
                auth=HTTPXSigAuth(key) if key else None,
                timeout=timeout if timeout is not None else 10.0,
            )
    except httpx.TimeoutException:
        logger.info(f"{method} {url} timed out")
        return FetchResult(status=TIMEOUT_STATUS)
    except httpx.HTTPError:
        logger.exception(f"{method} {url} failed")
        return FetchResult(status=CONNECTION_ERROR_STATUS)

    return FetchResult(
        status=resp.status_code,
        headers={k.lower(): v for k, v in resp.headers.items()},
        text=resp.text,
    )


async def activitypub_request(
    config: Config,
    url: str,
    key: "Key | None" = None,
) -> tuple[int, RawObject | None]:
    """GETs an ActivityPub document, returns (status, data)."""
    logger.info(f"Fetching {url} signed={key is not None}")
    status = 0
    result: FetchResult | None = None

    if key:
        result = await request(
            config, "GET", url, key=key, headers={"Accept": AP_CONTENT_TYPE}
        )
        status = result.status

    # Some servers reject signed GETs with a 5xx but serve the unsigned version
    if status <= 0 or 500 <= status <= 599:
        result = await request(
            config,
            "GET",
            url,
            headers={"Accept": AP_CONTENT_TYPE, "User-Agent": USER_AGENT},
        )
        status = result.status

    if not result or not is_valid_status(status):
        return status, None

    content_type = result.headers.get("content-type")
    if not content_type:
        return 400, None

    if (
        "application/activity+json" not in content_type
        and "application/ld+json" not in content_type
    ):
        logger.info(f"{url} is not ActivityPub data: {content_type=}")
        return 500, None

    if not result.text:
        return 400, None

    try:
        data = json.loads(result.text)
    except json.JSONDecodeError:
        logger.info(f"{url} returned invalid JSON")
        return 400, None

    if not isinstance(data, dict):
        return 400, None

    return status, data


async def fetch(
    config: Config,
    url: str,
    key: "Key | None" = None,
) -> RawObject:
    status, data = await activitypub_request(config, url, key)

    # Special handling for deleted object
    if status == 410:
        raise ObjectIsGoneError(url, status)
    elif status in [401, 403]:
        raise ObjectUnavailableError(url, status)
    elif status == 404:
        raise ObjectNotFoundError(url, status)
    elif status in [400, 500] and data is None:
        raise NotAnObjectError(url, status)
    elif not is_valid_status(status) or data is None:
        raise FetchError(url, status)

    return data


async def post(
    config: Config,
    key: "Key",
    inbox: str,
    payload: RawObject,
    timeout: float,
) -> FetchResult:
    logger.info(f"Posting to {inbox} {payload.get('type')} {payload.get('id')}")
    return await request(
        config,
        "POST",
        inbox,
        key=key,
        headers={"Content-Type": AP_CONTENT_TYPE},
        payload=payload,
        timeout=timeout,
    )


def as_list(val: Any | list[Any]) -> list[Any]:
    if val is None:
        return []

    if isinstance(val, list):
        return val

    return [val]


def get_id(val: str | dict[str, Any]) -> str:
    if isinstance(val, dict):
        val = val["id"]

    if not isinstance(val, str):
        raise ValueError(f"Invalid ID type: {val}")

    return val


def get_actor_id(activity: RawObject) -> str:
    if "attributedTo" in activity:
        attributed_to = as_list(activity["attributedTo"])
        return get_id(attributed_to[0])
    else:
        return get_id(activity["actor"])


def get_object_id(activity: RawObject) -> str | None:
    """Returns the id of the nested object, None when missing or malformed."""
    obj = activity.get("object")
    if isinstance(obj, dict):
        obj = obj.get("id")

    if not isinstance(obj, str):
        return None

    return obj


def get_nested_type(activity: RawObject) -> str | None:
    obj = activity.get("object")
    if isinstance(obj, dict):
        return obj.get("type")
    return None


def is_public(activity: RawObject) -> bool:
    for field_name in ["to", "cc"]:
        if AS_PUBLIC in as_list(activity.get(field_name)):
            return True
    return False


def remove_context(raw_object: RawObject) -> RawObject:
    if "@context" not in raw_object:
        return raw_object
    a = dict(raw_object)
    del a["@context"]
    return a
