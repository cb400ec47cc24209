import json

import aiosmtplib
import httpx
import pytest
import respx

from fedbox import models
from fedbox import notifications
from fedbox import objects
from fedbox import queue
from fedbox.config import Config
from fedbox.database import AsyncSession
from tests import factories
from tests.utils import count
from tests.utils import queue_items
from tests.utils import setup_local_user

BOB = "https://remote.test/u/bob"


@pytest.mark.asyncio
async def test_notification_body(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    user = await setup_local_user(async_db_session, config)

    body = notifications.notification_body(
        config, user, "Undo", "Follow", BOB, None
    )

    assert body == (
        "User  : @alice@local.test\n"
        "Type  : Undo + Follow\n"
        f"Actor : {BOB}\n"
    )

    body = notifications.notification_body(
        config, user, "Like", None, BOB, "https://local.test/alice/p/1"
    )
    assert body.splitlines() == [
        "User  : @alice@local.test",
        "Type  : Like",
        f"Actor : {BOB}",
        "Object: https://local.test/alice/p/1",
    ]


@pytest.mark.asyncio
async def test_notify__queues_email_and_chat(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    # Given a user with every channel configured
    alice = await setup_local_user(
        async_db_session,
        config,
        email="alice@example.com",
        telegram_bot="bot-token",
        telegram_chat_id="123",
    )

    # When notifying a like on one of its posts
    like = factories.build_admiration_activity(
        "Like", BOB, f"{alice.actor_id}/p/1"
    )
    notification = await notifications.notify(
        async_db_session, config, alice, "Like", None, BOB, like
    )

    # Then the notification is recorded
    assert notification
    assert notification.notification_type == models.NotificationType.LIKE
    assert notification.object_ap_id == f"{alice.actor_id}/p/1"
    assert notification.is_new is True

    # And queued to both channels
    email, chat = await queue_items(async_db_session)
    assert email.kind == models.QueueItemKind.EMAIL
    assert email.payload["to"] == "alice@example.com"
    assert email.payload["subject"] == "fedbox notify for @alice@local.test"
    assert "Type  : Like\n" in email.payload["body"]
    assert chat.kind == models.QueueItemKind.CHAT
    assert chat.payload == {
        "bot": "bot-token",
        "chat_id": "123",
        "text": email.payload["body"],
    }


@pytest.mark.asyncio
async def test_notify__email_disabled(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    config.disable_email_notifications = True
    alice = await setup_local_user(async_db_session, config, email="a@example.com")

    follow = factories.build_follow_activity(BOB, alice.actor_id)
    notification = await notifications.notify(
        async_db_session, config, alice, "Follow", None, BOB, follow
    )

    assert notification
    assert notification.object_ap_id == follow["id"]
    assert await count(async_db_session, models.QueueItem) == 0


@pytest.mark.asyncio
async def test_notify__undo_follow_references_the_actor(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    alice = await setup_local_user(async_db_session, config)
    undo = factories.build_undo_activity(
        factories.build_follow_activity(BOB, alice.actor_id)
    )

    notification = await notifications.notify(
        async_db_session, config, alice, "Undo", "Follow", BOB, undo
    )

    assert notification
    assert notification.notification_type == models.NotificationType.UNFOLLOW
    assert notification.object_ap_id == BOB


@pytest.mark.asyncio
async def test_notify__filtered_activities(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    alice = await setup_local_user(async_db_session, config)

    for ap_type, utype, msg in [
        # Admiration of someone else's post
        (
            "Like",
            None,
            factories.build_admiration_activity("Like", BOB, f"{BOB}/note/1"),
        ),
        # Undo of anything but a follow
        (
            "Undo",
            "Like",
            factories.build_undo_activity(
                factories.build_admiration_activity(
                    "Like", BOB, f"{alice.actor_id}/p/1"
                )
            ),
        ),
        # Public note not addressed to the user
        (
            "Create",
            "Note",
            factories.build_create_activity(factories.build_note_object(BOB)),
        ),
        # Poll vote
        (
            "Create",
            "Note",
            factories.build_create_activity(
                factories.build_note_object(
                    BOB, to=[alice.actor_id], name="yes", in_reply_to="poll"
                )
            ),
        ),
        # Open poll update
        (
            "Update",
            "Question",
            factories.build_update_activity(
                BOB,
                factories.build_question_object(BOB, ["a", "b"], "2030-01-01"),
            ),
        ),
    ]:
        assert (
            await notifications.notify(
                async_db_session, config, alice, ap_type, utype, BOB, msg
            )
            is None
        )

    assert await count(async_db_session, models.Notification) == 0


@pytest.mark.asyncio
async def test_notify__closed_poll_voted_by_the_user(
    async_db_session: AsyncSession,
    config: Config,
) -> None:
    # Given a remote poll the user voted in
    alice = await setup_local_user(async_db_session, config)
    poll = factories.build_question_object(BOB, ["a", "b"], "2020-01-01T00:00:00Z")
    vote = factories.build_note_object(
        alice.actor_id, to=[BOB], in_reply_to=poll["id"], name="a"
    )
    await objects.save_object(async_db_session, vote)

    # When it is closed
    poll["closed"] = poll["endTime"]
    notification = await notifications.notify(
        async_db_session,
        config,
        alice,
        "Update",
        "Question",
        BOB,
        factories.build_update_activity(BOB, poll),
    )

    # Then the user is notified
    assert notification
    assert notification.notification_type == models.NotificationType.POLL_CLOSED


@pytest.mark.asyncio
async def test_send_email(
    config: Config,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    sent = []

    async def _send(message, **kwargs):
        sent.append((message, kwargs))

    monkeypatch.setattr(aiosmtplib, "send", _send)

    assert await notifications.send_email(
        config,
        {"from": "a@local.test", "to": "b@example.com", "subject": "Hi", "body": "x"},
    )

    [(message, kwargs)] = sent
    assert message["To"] == "b@example.com"
    assert message["Subject"] == "Hi"
    assert kwargs["hostname"] == config.smtp_host
    assert kwargs["port"] == config.smtp_port


@pytest.mark.asyncio
async def test_process_email_item__retried_on_failure(
    async_db_session: AsyncSession,
    config: Config,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    # Given an SMTP server refusing connections
    async def _send(message, **kwargs):
        raise aiosmtplib.SMTPConnectError("refused")

    monkeypatch.setattr(aiosmtplib, "send", _send)
    await queue.enqueue_email(
        async_db_session,
        {"from": "a@local.test", "to": "b@example.com", "subject": "Hi", "body": "x"},
    )
    await async_db_session.commit()

    # When processing the email item
    await queue.process_queue(async_db_session, config, queue.GLOBAL_KINDS)

    # Then it is retried later
    [item] = await queue_items(async_db_session)
    assert item.kind == models.QueueItemKind.EMAIL
    assert item.retries == 1


@pytest.mark.asyncio
async def test_send_chat(respx_mock: respx.MockRouter) -> None:
    route = respx_mock.post(
        "https://api.telegram.org/botbot-token/sendMessage"
    ).mock(return_value=httpx.Response(200, json={"ok": True}))

    status = await notifications.send_chat(
        {"bot": "bot-token", "chat_id": "123", "text": "hello"}
    )

    assert status == 200
    assert json.loads(route.calls[0].request.content) == {
        "chat_id": "-123",
        "text": "hello",
    }


@pytest.mark.asyncio
async def test_process_chat_item__retried_on_failure(
    async_db_session: AsyncSession,
    config: Config,
    respx_mock: respx.MockRouter,
) -> None:
    respx_mock.post("https://api.telegram.org/botbot-token/sendMessage").mock(
        return_value=httpx.Response(502)
    )
    await queue.enqueue_chat(
        async_db_session, {"bot": "bot-token", "chat_id": "-123", "text": "hello"}
    )
    await async_db_session.commit()

    await queue.process_queue(async_db_session, config, queue.GLOBAL_KINDS)

    [item] = await queue_items(async_db_session)
    assert item.kind == models.QueueItemKind.CHAT
    assert item.retries == 1
    assert item.last_status == 502
