import json
from typing import Any

import httpx
import respx
from sqlalchemy import func
from sqlalchemy import select

from fedbox import activitypub as ap
from fedbox import models
from fedbox import users
from fedbox.actor import RemoteActor
from fedbox.actor import store_actor
from fedbox.config import AP_CONTENT_TYPE
from fedbox.config import UserConfig
from fedbox.database import AsyncSession
from fedbox.httpsig import HTTPXSigAuth
from fedbox.httpsig import SignedRequest
from fedbox.key import Key
from fedbox.users import LocalUser
from tests import factories


def ap_response(data: ap.RawObject | None, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(data).encode() if data is not None else b"",
        headers={"content-type": AP_CONTENT_TYPE},
    )


def remote_key(actor_id: str) -> Key:
    k = Key(actor_id, f"{actor_id}#main-key")
    k.load(factories.REMOTE_PRIVATE_KEY)
    return k


def build_signed_request(
    key: Key,
    url: str,
    msg: ap.RawObject,
) -> SignedRequest:
    """Signs a POST the way a remote server would and keeps its metadata."""
    request = httpx.Request(
        "POST",
        url,
        content=json.dumps(msg).encode(),
        headers={
            "User-Agent": "remote/1.0",
            "Content-Type": AP_CONTENT_TYPE,
        },
    )
    signed = next(HTTPXSigAuth(key).auth_flow(request))
    return SignedRequest(
        method=signed.method,
        path=signed.url.path,
        headers={k.lower(): v for k, v in signed.headers.items()},
    )


async def setup_local_user(
    db_session: AsyncSession,
    config,
    uid: str = "alice",
    **user_config: Any,
) -> LocalUser:
    user = await users.create_user(
        db_session,
        config,
        uid,
        UserConfig(name=uid, **user_config),
        private_key_pem=factories.LOCAL_PRIVATE_KEY,
    )
    await db_session.commit()
    return user


async def setup_remote_actor(
    db_session: AsyncSession,
    respx_mock: respx.MockRouter | None = None,
    base_url: str = "https://remote.test/u/bob",
    username: str = "bob",
    shared_inbox: str | None = None,
) -> RemoteActor:
    """Caches a remote actor, also served by the mock when given."""
    ra = factories.RemoteActorFactory(
        base_url=base_url,
        username=username,
        shared_inbox=shared_inbox,
    )
    await store_actor(db_session, ra.ap_actor, ra.ap_id)
    await db_session.commit()
    if respx_mock is not None:
        respx_mock.get(ra.ap_id).mock(return_value=ap_response(ra.ap_actor))
    return ra


async def count(db_session: AsyncSession, model, *where) -> int:
    return await db_session.scalar(select(func.count(model.id)).where(*where))


async def queue_items(
    db_session: AsyncSession,
    kind: models.QueueItemKind | None = None,
) -> list[models.QueueItem]:
    query = select(models.QueueItem).order_by(models.QueueItem.id)
    if kind:
        query = query.where(models.QueueItem.kind == kind)
    return (await db_session.scalars(query)).all()
