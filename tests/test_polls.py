from datetime import timedelta

import pytest
from sqlalchemy import select

from fedbox import models
from fedbox import objects
from fedbox import polls
from fedbox import users
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.inbox import InboxStatus
from fedbox.inbox import process_input_message
from fedbox.users import LocalUser
from fedbox.utils.datetime import isoformat
from fedbox.utils.datetime import now
from tests import factories
from tests.utils import build_signed_request
from tests.utils import count
from tests.utils import queue_items
from tests.utils import remote_key
from tests.utils import setup_local_user
from tests.utils import setup_remote_actor

BOB = "https://remote.test/u/bob"
CAROL = "https://remote.test/u/carol"
MALLORY = "https://remote.test/u/mallory"


async def _setup_poll(
    db_session: AsyncSession,
    user: LocalUser,
    end_time: str | None = None,
) -> str:
    poll = factories.build_question_object(
        user.actor_id,
        ["yes", "no"],
        end_time or isoformat(now() + timedelta(days=1)),
        question_id=f"{user.actor_id}/p/poll",
    )
    await users.timeline_add(db_session, user, poll["id"], poll)
    return poll["id"]


async def _vote(db_session: AsyncSession, actor_id: str, poll_id: str, choice: str):
    vote = factories.build_note_object(
        actor_id, content="", in_reply_to=poll_id, name=choice
    )
    await objects.save_object(db_session, vote)


@pytest.mark.asyncio
async def test_update_question__recounts_votes(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    # Given an open poll
    alice = await setup_local_user(async_db_session, config)
    poll_id = await _setup_poll(async_db_session, alice)

    # And votes, one of them for an unknown option
    await _vote(async_db_session, BOB, poll_id, "yes")
    await _vote(async_db_session, CAROL, poll_id, "no")
    await _vote(async_db_session, MALLORY, poll_id, "maybe")

    # When recounting
    assert await polls.update_question(async_db_session, config, alice, poll_id) == 0

    # Then only the valid votes are counted
    poll = await objects.get_object(async_db_session, poll_id)
    assert poll
    assert [
        (option["name"], option["replies"]["totalItems"])
        for option in poll.ap_object["oneOf"]
    ] == [("yes", 1), ("no", 1)]
    assert poll.ap_object["votersCount"] == 2
    assert poll.ap_object["cc"] == [BOB, CAROL]
    assert "closed" not in poll.ap_object

    # And the update is sent to the voters
    [item] = await queue_items(async_db_session, models.QueueItemKind.MESSAGE)
    update = item.payload["message"]
    assert update["type"] == "Update"
    assert update["object"]["id"] == poll_id
    assert update["cc"] == [BOB, CAROL]

    # And nobody is notified yet
    assert await count(async_db_session, models.Notification) == 0


@pytest.mark.asyncio
async def test_update_question__closes_expired_poll(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    # Given a poll past its end time
    alice = await setup_local_user(async_db_session, config)
    end_time = isoformat(now() - timedelta(minutes=1))
    poll_id = await _setup_poll(async_db_session, alice, end_time)
    await _vote(async_db_session, BOB, poll_id, "no")

    # When recounting
    assert await polls.update_question(async_db_session, config, alice, poll_id) == 0

    # Then it is closed
    poll = await objects.get_object(async_db_session, poll_id)
    assert poll
    assert poll.ap_object["closed"] == end_time

    # And its author is notified
    notification = (
        await async_db_session.scalars(select(models.Notification))
    ).one()
    assert notification.notification_type == models.NotificationType.POLL_CLOSED
    assert notification.object_ap_id == poll_id

    # And it can't be recounted anymore
    assert (
        await polls.update_question(async_db_session, config, alice, poll_id)
        == polls.POLL_ALREADY_CLOSED
    )


@pytest.mark.asyncio
async def test_update_question__error_codes(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    alice = await setup_local_user(async_db_session, config)
    note = factories.build_note_object(
        alice.actor_id, note_id=f"{alice.actor_id}/p/note"
    )
    await objects.save_object(async_db_session, note)

    assert (
        await polls.update_question(async_db_session, config, alice, "unknown")
        == polls.POLL_NOT_FOUND
    )
    assert (
        await polls.update_question(async_db_session, config, alice, note["id"])
        == polls.POLL_WITHOUT_OPTIONS
    )


@pytest.mark.asyncio
async def test_update_question__multiple_choices(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    alice = await setup_local_user(async_db_session, config)
    poll = factories.build_question_object(
        alice.actor_id,
        ["red", "blue"],
        isoformat(now() + timedelta(days=1)),
        question_id=f"{alice.actor_id}/p/poll",
    )
    poll["anyOf"] = poll.pop("oneOf")
    await objects.save_object(async_db_session, poll)

    # A voter may pick every option
    await _vote(async_db_session, BOB, poll["id"], "red")
    await _vote(async_db_session, BOB, poll["id"], "blue")

    assert await polls.update_question(async_db_session, config, alice, poll["id"]) == 0
    stored = await objects.get_object(async_db_session, poll["id"])
    assert stored
    assert [
        option["replies"]["totalItems"] for option in stored.ap_object["anyOf"]
    ] == [1, 1]
    assert stored.ap_object["votersCount"] == 1


@pytest.mark.asyncio
async def test_was_question_voted(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    alice = await setup_local_user(async_db_session, config)
    poll_id = f"{BOB}/note/poll"

    assert not await polls.was_question_voted(async_db_session, alice, poll_id)

    await _vote(async_db_session, alice.actor_id, poll_id, "yes")
    assert await polls.was_question_voted(async_db_session, alice, poll_id)


@pytest.mark.asyncio
async def test_inbox__vote_is_counted(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    # Given an open poll
    alice = await setup_local_user(async_db_session, config)
    poll_id = await _setup_poll(async_db_session, alice)
    await setup_remote_actor(async_db_session)
    await async_db_session.commit()

    # When a remote actor votes
    vote = factories.build_note_object(
        BOB, content="", to=[alice.actor_id], in_reply_to=poll_id, name="yes"
    )
    create = factories.build_create_activity(vote)
    req = build_signed_request(remote_key(BOB), f"{alice.actor_id}/inbox", create)
    status = await process_input_message(async_db_session, config, alice, create, req)

    # Then the poll was recounted
    assert status == InboxStatus.HANDLED
    poll = await objects.get_object(async_db_session, poll_id)
    assert poll
    assert poll.ap_object["oneOf"][0]["replies"]["totalItems"] == 1

    # And the vote is not notified as a mention
    assert await count(async_db_session, models.Notification) == 0
