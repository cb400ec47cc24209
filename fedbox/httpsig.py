import base64
import hashlib
import typing
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Dict
from typing import MutableMapping
from typing import Optional
from urllib.parse import urlparse

import httpx
from cachetools import LFUCache
from Crypto.Hash import SHA256
from Crypto.Signature import PKCS1_v1_5
from dateutil.parser import parse
from loguru import logger
from sqlalchemy import select

from fedbox.config import Config
from fedbox.key import Key
from fedbox.utils.datetime import now
from fedbox.utils.url import is_hostname_blocked

if typing.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

_KEY_CACHE: MutableMapping[str, Key] = LFUCache(256)


def _build_signed_string(
    signed_headers: str,
    method: str,
    path: str,
    headers: Any,
    body_digest: str | None,
    sig_data: dict[str, Any],
) -> tuple[str, datetime | None]:
    signature_date: datetime | None = None
    out = []
    for signed_header in signed_headers.split(" "):
        if signed_header == "(created)":
            signature_date = datetime.fromtimestamp(int(sig_data["created"])).replace(
                tzinfo=timezone.utc
            )
        elif signed_header == "date":
            signature_date = parse(headers["date"])

        if signed_header == "(request-target)":
            out.append("(request-target): " + method.lower() + " " + path)
        elif signed_header == "digest" and body_digest:
            out.append("digest: " + body_digest)
        elif signed_header in ["(created)", "(expires)"]:
            out.append(
                signed_header
                + ": "
                + sig_data[signed_header[1 : len(signed_header) - 1]]
            )
        else:
            out.append(signed_header + ": " + headers[signed_header])
    return "\n".join(out), signature_date


def _parse_sig_header(val: Optional[str]) -> Optional[Dict[str, str]]:
    if not val:
        return None
    out = {}
    for data in val.split(","):
        k, v = data.split("=", 1)
        out[k.strip()] = v[1 : len(v) - 1]  # noqa: black conflict
    return out


def _verify_h(signed_string, signature, pubkey):
    signer = PKCS1_v1_5.new(pubkey)
    digest = SHA256.new()
    digest.update(signed_string.encode("utf-8"))
    return signer.verify(digest, signature)


def compute_digest(body: bytes) -> str:
    h = hashlib.new("sha256")
    h.update(body)  # type: ignore
    return "SHA-256=" + base64.b64encode(h.digest()).decode("utf-8")


@dataclass(frozen=True)
class SignedRequest:
    """What the inbox endpoint keeps from the HTTP request so the signature
    can be checked later, when the queue item is drained."""

    method: str
    path: str
    headers: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method, "path": self.path, "headers": self.headers}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignedRequest":
        return cls(
            method=data.get("method", "POST"),
            path=data.get("path", "/"),
            headers={k.lower(): v for k, v in data.get("headers", {}).items()},
        )


async def _get_public_key(
    db_session: "AsyncSession",
    config: Config,
    key_id: str,
    should_skip_cache: bool = False,
) -> Key:
    if not should_skip_cache and (cached_key := _KEY_CACHE.get(key_id)):
        logger.info(f"Key {key_id} found in cache")
        return cached_key

    # Check if the key belongs to an actor already in DB
    from fedbox import models

    existing_actor = (
        await db_session.scalars(
            select(models.Actor).where(models.Actor.ap_id == key_id.split("#")[0])
        )
    ).one_or_none()
    if not should_skip_cache:
        if existing_actor and existing_actor.public_key_id == key_id:
            k = Key(existing_actor.ap_id, key_id)
            k.load_pub(existing_actor.public_key_as_pem)
            logger.info(f"Found {key_id} on an existing actor")
            _KEY_CACHE[key_id] = k
            return k

    # Fetch it
    from fedbox import activitypub as ap
    from fedbox.actor import update_cached_actor

    actor = await ap.fetch(config, key_id)

    k = Key.from_dict(actor)

    # Ensure the right key was fetch
    if key_id not in [k.key_id(), k.owner]:
        raise ValueError(f"failed to fetch requested key {key_id}: got {k.key_id()}")

    if should_skip_cache and actor["type"] != "Key" and existing_actor:
        # The actor key probably changed, refresh the cached actor
        await update_cached_actor(db_session, existing_actor, actor)
        await db_session.commit()

    _KEY_CACHE[key_id] = k
    return k


@dataclass(frozen=True)
class HTTPSigInfo:
    has_valid_signature: bool
    signed_by_ap_actor_id: str | None = None

    is_ap_actor_gone: bool = False
    is_unsupported_algorithm: bool = False
    is_expired: bool = False
    is_from_blocked_server: bool = False

    server: str | None = None

    @property
    def error(self) -> str:
        if self.has_valid_signature:
            return ""
        if self.is_from_blocked_server:
            return "blocked server"
        if self.is_unsupported_algorithm:
            return "unsupported signature algorithm"
        if self.is_expired:
            return "signature expired"
        if self.is_ap_actor_gone:
            return "actor is gone"
        return "invalid signature"


async def verify_signed_request(
    db_session: "AsyncSession",
    config: Config,
    req: SignedRequest,
) -> HTTPSigInfo:
    from fedbox import activitypub as ap

    hsig = _parse_sig_header(req.headers.get("signature"))
    if not hsig:
        logger.info("No HTTP signature found")
        return HTTPSigInfo(has_valid_signature=False)

    try:
        key_id = hsig["keyId"]
    except KeyError:
        logger.info("Missing keyId")
        return HTTPSigInfo(
            has_valid_signature=False,
        )

    server = urlparse(key_id).hostname
    if server and is_hostname_blocked(server, config.blocked_hostnames):
        return HTTPSigInfo(
            has_valid_signature=False,
            server=server,
            is_from_blocked_server=True,
        )

    if (alg := hsig.get("algorithm")) not in ["rsa-sha256", "hs2019"]:
        logger.info(f"Unsupported HTTP sig algorithm: {alg}")
        return HTTPSigInfo(
            has_valid_signature=False,
            is_unsupported_algorithm=True,
            server=server,
        )

    try:
        signed_string, signature_date = _build_signed_string(
            hsig.get("headers", "date"),
            req.method,
            req.path,
            req.headers,
            None,
            hsig,
        )
    except KeyError:
        logger.info(f"Signed header missing from request {hsig=}")
        return HTTPSigInfo(has_valid_signature=False, server=server)

    # Sanity checks on the signature date
    if signature_date is None or now() - signature_date > timedelta(hours=12):
        logger.info(f"Signature expired: {signature_date=}")
        return HTTPSigInfo(
            has_valid_signature=False,
            is_expired=True,
            server=server,
        )

    try:
        k = await _get_public_key(db_session, config, key_id)
    except (ap.ObjectIsGoneError, ap.ObjectNotFoundError):
        logger.info("Actor is gone or not found")
        return HTTPSigInfo(has_valid_signature=False, is_ap_actor_gone=True)
    except Exception:
        logger.exception(f"Failed to fetch HTTP sig key {key_id}")
        return HTTPSigInfo(has_valid_signature=False)

    has_valid_signature = _verify_h(
        signed_string, base64.b64decode(hsig["signature"]), k.pubkey
    )

    # If the signature is not valid, we may have to update the cached actor
    if not has_valid_signature:
        logger.info("Invalid signature, trying to refresh actor")
        try:
            k = await _get_public_key(
                db_session, config, key_id, should_skip_cache=True
            )
            has_valid_signature = _verify_h(
                signed_string, base64.b64decode(hsig["signature"]), k.pubkey
            )
        except Exception:
            logger.exception("Failed to refresh actor")

    httpsig_info = HTTPSigInfo(
        has_valid_signature=has_valid_signature,
        signed_by_ap_actor_id=k.owner,
        server=server,
    )
    logger.info(f"HTTP signature for {k.owner}: {has_valid_signature=}")
    return httpsig_info


class HTTPXSigAuth(httpx.Auth):
    def __init__(self, key: Key) -> None:
        self.key = key

    def auth_flow(
        self, r: httpx.Request
    ) -> typing.Generator[httpx.Request, httpx.Response, None]:
        logger.info(f"keyid={self.key.key_id()}")

        bodydigest = None
        if r.content:
            bodydigest = compute_digest(r.content)

        date = datetime.now(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")
        r.headers["Date"] = date
        if bodydigest:
            r.headers["Digest"] = bodydigest
            sigheaders = "(request-target) user-agent host date digest content-type"
        else:
            sigheaders = "(request-target) user-agent host date accept"

        to_be_signed, _ = _build_signed_string(
            sigheaders, r.method, r.url.path, r.headers, bodydigest, {}
        )
        if not self.key.can_sign:
            raise ValueError(f"{self.key.key_id()} has no private key")
        signer = PKCS1_v1_5.new(self.key.privkey)
        digest = SHA256.new()
        digest.update(to_be_signed.encode("utf-8"))
        sig = base64.b64encode(signer.sign(digest)).decode()

        key_id = self.key.key_id()
        sig_value = f'keyId="{key_id}",algorithm="rsa-sha256",headers="{sigheaders}",signature="{sig}"'  # noqa: E501
        logger.debug(f"signed request {sig_value=}")
        r.headers["Signature"] = sig_value
        yield r
