import httpx
import pytest
import respx

from fedbox import activitypub as ap
from fedbox import instances
from fedbox import models
from fedbox import users
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.outbox import dispatch
from fedbox.outbox import post_message
from fedbox.outbox import recipients
from tests.utils import count
from tests.utils import queue_items
from tests.utils import setup_local_user
from tests.utils import setup_remote_actor

ACTOR_A = "https://other.test/u/a"
ACTOR_B = "https://other.test/u/b"
FOLLOWER_X = "https://remote.test/u/x"
FOLLOWER_Y = "https://remote.test/u/y"


@pytest.mark.asyncio
async def test_recipients__expands_public_to_followers(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    # Given a user with two followers
    alice = await setup_local_user(async_db_session, config)
    await users.follower_add(async_db_session, alice, FOLLOWER_X)
    await users.follower_add(async_db_session, alice, FOLLOWER_Y)

    # And an activity to an actor and the public, cc'ing another actor
    activity = {"type": "Create", "to": [ACTOR_A, ap.AS_PUBLIC], "cc": ACTOR_B}

    # Then expanding the public address yields the followers
    assert await recipients(async_db_session, alice, activity, True) == {
        ACTOR_A,
        ACTOR_B,
        FOLLOWER_X,
        FOLLOWER_Y,
    }

    # And the raw recipients keep the public address
    assert await recipients(async_db_session, alice, activity) == {
        ACTOR_A,
        ACTOR_B,
        ap.AS_PUBLIC,
    }


@pytest.mark.asyncio
async def test_recipients__skips_invalid_entries(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    alice = await setup_local_user(async_db_session, config)

    activity = {"to": ["", None, {"id": ACTOR_A}, ACTOR_B], "cc": None}

    assert await recipients(async_db_session, alice, activity, True) == {ACTOR_B}


@pytest.mark.asyncio
async def test_dispatch__public_activity(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    # Given two followers behind the same shared inbox
    alice = await setup_local_user(async_db_session, config)
    for actor_id, username in [(FOLLOWER_X, "x"), (FOLLOWER_Y, "y")]:
        await setup_remote_actor(
            async_db_session,
            base_url=actor_id,
            username=username,
            shared_inbox="https://remote.test/inbox",
        )
        await users.follower_add(async_db_session, alice, actor_id)

    # And an actor with its own inbox
    await setup_remote_actor(async_db_session, base_url=ACTOR_A, username="a")

    # And another known instance
    await instances.inbox_add(async_db_session, "https://third.test/inbox")

    # When dispatching a public activity, also addressed to the user itself
    activity = {
        "type": "Create",
        "id": f"{alice.actor_id}/p/1/Create",
        "to": [ap.AS_PUBLIC, alice.actor_id],
        "cc": [ACTOR_A],
    }
    inboxes = await dispatch(async_db_session, config, alice, activity)

    # Then one output item per distinct inbox was queued
    assert inboxes == {
        "https://remote.test/inbox",
        f"{ACTOR_A}/inbox",
        "https://third.test/inbox",
    }
    items = await queue_items(async_db_session, models.QueueItemKind.OUTPUT)
    assert sorted(item.payload["inbox"] for item in items) == sorted(inboxes)
    assert all(item.payload["message"] == activity for item in items)
    assert all(item.user_id == alice.id for item in items)


@pytest.mark.asyncio
async def test_dispatch__private_activity(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    # Given a follower and another known instance
    alice = await setup_local_user(async_db_session, config)
    await setup_remote_actor(async_db_session, base_url=FOLLOWER_X, username="x")
    await users.follower_add(async_db_session, alice, FOLLOWER_X)
    await instances.inbox_add(async_db_session, "https://third.test/inbox")
    await setup_remote_actor(async_db_session, base_url=ACTOR_A, username="a")

    # When dispatching a direct message
    inboxes = await dispatch(
        async_db_session,
        config,
        alice,
        {"type": "Create", "id": f"{alice.actor_id}/p/1/Create", "to": [ACTOR_A]},
    )

    # Then only the recipient gets it
    assert inboxes == {f"{ACTOR_A}/inbox"}


@pytest.mark.asyncio
async def test_dispatch__unknown_inbox(
    async_db_session: AsyncSession,
    config: Config,
    respx_mock: respx.MockRouter,
) -> None:
    alice = await setup_local_user(async_db_session, config)
    respx_mock.get("https://gone.test/u/z").mock(return_value=httpx.Response(410))

    inboxes = await dispatch(
        async_db_session,
        config,
        alice,
        {"type": "Like", "id": "x", "to": ["https://gone.test/u/z"]},
    )

    assert inboxes == set()
    assert await count(async_db_session, models.QueueItem) == 0


@pytest.mark.asyncio
async def test_post_message__delivered(
    async_db_session: AsyncSession,
    config: Config,
    respx_mock: respx.MockRouter,
) -> None:
    alice = await setup_local_user(async_db_session, config)
    ra = await setup_remote_actor(async_db_session)
    route = respx_mock.post(f"{ra.ap_id}/inbox").mock(
        return_value=httpx.Response(202)
    )

    status = await post_message(
        async_db_session, config, alice, ra.ap_id, {"type": "Ping", "id": "x"}
    )

    assert status == 202
    assert route.called
    assert await count(async_db_session, models.QueueItem) == 0


@pytest.mark.asyncio
async def test_post_message__unknown_actor_is_queued(
    async_db_session: AsyncSession,
    config: Config,
    respx_mock: respx.MockRouter,
) -> None:
    alice = await setup_local_user(async_db_session, config)
    respx_mock.get("https://gone.test/u/z").mock(return_value=httpx.Response(503))

    status = await post_message(
        async_db_session,
        config,
        alice,
        "https://gone.test/u/z",
        {"type": "Ping", "id": "x"},
    )

    assert status == 0
    [item] = await queue_items(async_db_session, models.QueueItemKind.MESSAGE)
    assert item.payload == {"message": {"type": "Ping", "id": "x"}}
