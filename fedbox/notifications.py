from email.message import EmailMessage

import aiosmtplib
import httpx
from loguru import logger

from fedbox import activitypub as ap
from fedbox import models
from fedbox.config import USER_AGENT
from fedbox.config import Config
from fedbox.database import AsyncSession
from fedbox.outbox import recipients
from fedbox.users import LocalUser

_NOTIFICATION_TYPES = {
    "Follow": models.NotificationType.NEW_FOLLOWER,
    "Undo": models.NotificationType.UNFOLLOW,
    "Like": models.NotificationType.LIKE,
    "Announce": models.NotificationType.ANNOUNCE,
    "Create": models.NotificationType.MENTION,
    "Update": models.NotificationType.POLL_CLOSED,
}


async def _should_notify(
    db_session: AsyncSession,
    user: LocalUser,
    ap_type: str,
    utype: str | None,
    object_id: str | None,
    msg: ap.RawObject,
) -> bool:
    if ap_type == "Create":
        # Only notes sent directly to the user
        if user.actor_id not in await recipients(db_session, user, msg):
            return False

        # Poll votes
        note = msg.get("object")
        if isinstance(note, dict) and note.get("name") is not None:
            return False

    if ap_type == "Undo" and utype != "Follow":
        return False

    if ap_type in ["Like", "Announce"] and not user.owns(object_id):
        return False

    if ap_type == "Update" and utype == "Question":
        from fedbox.polls import was_question_voted

        poll = msg.get("object")
        if not isinstance(poll, dict) or not poll.get("closed"):
            return False

        if not (poll_id := poll.get("id")):
            return False

        if not user.owns(poll_id) and not await was_question_voted(
            db_session, user, poll_id
        ):
            return False

    return True


def notification_body(
    config: Config,
    user: LocalUser,
    ap_type: str,
    utype: str | None,
    actor: str,
    object_id: str | None,
) -> str:
    lines = [f"User  : @{user.uid}@{config.host}"]
    if utype:
        lines.append(f"Type  : {ap_type} + {utype}")
    else:
        lines.append(f"Type  : {ap_type}")
    lines.append(f"Actor : {actor}")
    if object_id:
        lines.append(f"Object: {object_id}")
    return "\n".join(lines) + "\n"


async def notify(
    db_session: AsyncSession,
    config: Config,
    user: LocalUser,
    ap_type: str,
    utype: str | None,
    actor: str,
    msg: ap.RawObject,
) -> models.Notification | None:
    """Records a notification for the user and queues it to their channels.

    Returns None when the activity is not worth a notification.
    """
    from fedbox.queue import enqueue_chat
    from fedbox.queue import enqueue_email

    object_id = ap.get_object_id(msg)
    if not await _should_notify(db_session, user, ap_type, utype, object_id, msg):
        logger.debug(f"Not notifying {user.uid} about {ap_type} {utype} {actor}")
        return None

    body = notification_body(config, user, ap_type, utype, actor, object_id)

    if config.disable_email_notifications:
        logger.debug("Email notifications are disabled")
    elif email := user.config.email:
        logger.info(f"email notify {ap_type} {utype} {actor}")
        await enqueue_email(
            db_session,
            {
                "from": f"fedbox-daemon <fedbox-daemon@{config.host}>",
                "to": email,
                "subject": f"fedbox notify for @{user.uid}@{config.host}",
                "body": body,
            },
        )

    if user.config.telegram_bot and user.config.telegram_chat_id:
        await enqueue_chat(
            db_session,
            {
                "bot": user.config.telegram_bot,
                "chat_id": user.config.telegram_chat_id,
                "text": body,
            },
        )

    if ap_type == "Follow":
        object_id = msg.get("id")
    elif utype == "Follow":
        object_id = actor

    notification = models.Notification(
        user_id=user.id,
        notification_type=_NOTIFICATION_TYPES.get(
            ap_type, models.NotificationType.OTHER
        ),
        activity_type=ap_type,
        nested_type=utype,
        ap_actor_id=actor,
        object_ap_id=object_id or msg.get("id"),
    )
    db_session.add(notification)
    await db_session.flush()
    return notification


async def send_email(config: Config, payload: dict[str, str]) -> bool:
    message = EmailMessage()
    message["From"] = payload["from"]
    message["To"] = payload["to"]
    message["Subject"] = payload["subject"]
    message.set_content(payload["body"])

    try:
        await aiosmtplib.send(
            message,
            hostname=config.smtp_host,
            port=config.smtp_port,
            timeout=config.queue_timeout_2,
        )
    except (aiosmtplib.SMTPException, OSError):
        logger.exception(f"Failed to send email to {payload['to']}")
        return False

    logger.info(f"email sent to {payload['to']}")
    return True


async def send_chat(payload: dict[str, str]) -> int:
    """Posts the notification to Telegram, returns the HTTP status."""
    chat_id = payload["chat_id"]
    if not chat_id.startswith("-"):
        chat_id = f"-{chat_id}"

    url = f"https://api.telegram.org/bot{payload['bot']}/sendMessage"
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                url,
                json={"chat_id": chat_id, "text": payload["text"]},
                headers={"User-Agent": USER_AGENT},
                timeout=10.0,
            )
    except httpx.HTTPError:
        logger.exception("Failed to post chat notification")
        return ap.CONNECTION_ERROR_STATUS

    logger.info(f"chat notification post {resp.status_code}")
    return resp.status_code
