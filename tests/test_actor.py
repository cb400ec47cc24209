from datetime import timedelta

import httpx
import pytest
import respx
from sqlalchemy import select

from fedbox import models
from fedbox.actor import RemoteActor
from fedbox.actor import get_actor_inbox
from fedbox.actor import get_cached_actor
from fedbox.actor import resolve_actor
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.utils.datetime import now
from tests import factories
from tests.utils import ap_response
from tests.utils import setup_remote_actor


def test_remote_actor__rejects_non_actor_types() -> None:
    with pytest.raises(ValueError):
        RemoteActor({"id": "https://remote.test/note/1", "type": "Note"})


def test_remote_actor__delivery_inbox_prefers_shared_inbox() -> None:
    ra = factories.RemoteActorFactory(shared_inbox="https://remote.test/inbox")
    assert ra.delivery_inbox_url == "https://remote.test/inbox"
    assert ra.handle == "@bob@remote.test"

    ra = factories.RemoteActorFactory()
    assert ra.delivery_inbox_url == "https://remote.test/u/bob/inbox"


@pytest.mark.asyncio
async def test_resolve_actor__fetches_and_caches(
    async_db_session: AsyncSession,
    config: Config,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a remote actor advertising a shared inbox
    ra = factories.RemoteActorFactory(shared_inbox="https://remote.test/inbox")
    route = respx_mock.get(ra.ap_id).mock(return_value=ap_response(ra.ap_actor))

    # When resolving it twice
    status, ap_actor = await resolve_actor(async_db_session, config, ra.ap_id)
    await resolve_actor(async_db_session, config, ra.ap_id)

    # Then it was fetched only once
    assert status == 200
    assert ap_actor == ra.ap_actor
    assert route.call_count == 1
    assert await get_cached_actor(async_db_session, ra.ap_id)

    # And its shared inbox was collected
    shared_inboxes = (
        await async_db_session.scalars(select(models.SharedInbox.url))
    ).all()
    assert shared_inboxes == ["https://remote.test/inbox"]


@pytest.mark.asyncio
async def test_resolve_actor__inbox_collection_disabled(
    async_db_session: AsyncSession,
    config: Config,
    respx_mock: respx.MockRouter,
) -> None:
    config.disable_inbox_collection = True
    ra = factories.RemoteActorFactory(shared_inbox="https://remote.test/inbox")
    respx_mock.get(ra.ap_id).mock(return_value=ap_response(ra.ap_actor))

    await resolve_actor(async_db_session, config, ra.ap_id)

    assert (await async_db_session.scalars(select(models.SharedInbox))).all() == []


@pytest.mark.asyncio
async def test_resolve_actor__refreshes_stale_actor(
    async_db_session: AsyncSession,
    config: Config,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a cached actor older than the refresh period
    ra = await setup_remote_actor(async_db_session)
    cached = await get_cached_actor(async_db_session, ra.ap_id)
    assert cached
    cached.updated_at = now() - timedelta(hours=config.actor_refresh_hours + 1)
    await async_db_session.commit()

    # And a remote server serving an updated profile
    updated = dict(ra.ap_actor, name="Bob Updated")
    route = respx_mock.get(ra.ap_id).mock(return_value=ap_response(updated))

    # When resolving the actor
    status, ap_actor = await resolve_actor(async_db_session, config, ra.ap_id)

    # Then the profile was refreshed
    assert status == 200
    assert route.called
    assert ap_actor
    assert ap_actor["name"] == "Bob Updated"
    refreshed = await get_cached_actor(async_db_session, ra.ap_id)
    assert refreshed
    assert refreshed.ap_actor["name"] == "Bob Updated"


@pytest.mark.asyncio
async def test_resolve_actor__stale_actor_kept_on_transient_error(
    async_db_session: AsyncSession,
    config: Config,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a stale cached actor
    ra = await setup_remote_actor(async_db_session)
    cached = await get_cached_actor(async_db_session, ra.ap_id)
    assert cached
    cached.updated_at = now() - timedelta(days=3)
    await async_db_session.commit()

    # And its server temporarily failing
    respx_mock.get(ra.ap_id).mock(return_value=httpx.Response(503))

    # When resolving the actor
    status, ap_actor = await resolve_actor(async_db_session, config, ra.ap_id)

    # Then the cached version is used
    assert status == 200
    assert ap_actor
    assert ap_actor["id"] == ra.ap_id


@pytest.mark.parametrize("remote_status", [404, 410])
@pytest.mark.asyncio
async def test_resolve_actor__permanent_error(
    async_db_session: AsyncSession,
    config: Config,
    respx_mock: respx.MockRouter,
    remote_status: int,
) -> None:
    # Given a stale cached actor that is now gone
    ra = await setup_remote_actor(async_db_session)
    cached = await get_cached_actor(async_db_session, ra.ap_id)
    assert cached
    cached.updated_at = now() - timedelta(days=3)
    await async_db_session.commit()
    respx_mock.get(ra.ap_id).mock(return_value=httpx.Response(remote_status))

    # When resolving it
    status, ap_actor = await resolve_actor(async_db_session, config, ra.ap_id)

    # Then the failure is reported, the cache is not used
    assert status == remote_status
    assert ap_actor is None


@pytest.mark.asyncio
async def test_get_actor_inbox(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    ra = await setup_remote_actor(
        async_db_session, shared_inbox="https://remote.test/inbox"
    )

    assert await get_actor_inbox(async_db_session, config, ra.ap_id) == (
        "https://remote.test/inbox"
    )
