import json
import sys
from typing import Any

from fastapi import Depends
from fastapi import FastAPI
from fastapi import Request
from fastapi import Response
from fastapi.exceptions import HTTPException
from loguru import logger
from sqlalchemy import select
from starlette.responses import JSONResponse

from fedbox import activitypub as ap
from fedbox import instances
from fedbox import models
from fedbox import objects
from fedbox import users
from fedbox.config import AP_CONTENT_TYPE
from fedbox.config import Config
from fedbox.config import load_config
from fedbox.database import AsyncSession
from fedbox.database import Database
from fedbox.database import get_db_session
from fedbox.httpsig import SignedRequest
from fedbox.httpsig import compute_digest
from fedbox.inbox import archive_error
from fedbox.messages import msg_actor
from fedbox.messages import msg_collection
from fedbox.messages import msg_create
from fedbox.queue import enqueue_input
from fedbox.queue import enqueue_shared_input
from fedbox.users import LocalUser
from fedbox.webfinger import webfinger_response

_AP_CONTENT_TYPES = ["application/activity+json", "application/ld+json"]
_OUTBOX_SIZE = 20


class ActivityPubResponse(JSONResponse):
    media_type = AP_CONTENT_TYPE


def _configure_logger(config: Config) -> None:
    logger.remove()
    logger_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )
    logger.add(
        sys.stdout, format=logger_format, level="DEBUG" if config.debug else "INFO"
    )


def _is_activitypub_content_type(content_type: str) -> bool:
    return any(ct in content_type for ct in _AP_CONTENT_TYPES)


def _signed_request(request: Request) -> SignedRequest:
    path = request.url.path
    if request.url.query:
        path += f"?{request.url.query}"
    return SignedRequest(
        method=request.method,
        path=path,
        headers={k.lower(): v for k, v in request.headers.items()},
    )


def create_app(config: Config) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None)
    app.state.config = config
    app.state.database = Database(config)

    async def _get_user_or_404(db_session: AsyncSession, uid: str) -> LocalUser:
        user = await users.get_user(db_session, config, uid)
        if not user:
            raise HTTPException(status_code=404)
        return user

    async def _receive(
        request: Request,
        db_session: AsyncSession,
        uid: str | None,
    ) -> Response:
        content_type = request.headers.get("content-type")
        if not content_type:
            logger.info("inbox: no content type")
            return Response(status_code=400)

        if not _is_activitypub_content_type(content_type):
            logger.info(f"inbox: non-activitypub content type {content_type}")
            return Response(status_code=400)

        body = await request.body()
        req = _signed_request(request).to_dict()
        try:
            msg = json.loads(body)
        except json.JSONDecodeError:
            msg = None

        if not isinstance(msg, dict):
            await archive_error(
                db_session,
                "inbox",
                "malformed JSON",
                req,
                body.decode(errors="replace"),
            )
            await db_session.commit()
            return Response(status_code=400)

        ap_id = msg.get("id")
        if isinstance(ap_id, str) and await instances.is_instance_blocked(
            db_session, config, ap_id
        ):
            logger.info(f"inbox: dropped activity from blocked instance {ap_id}")
            return Response(status_code=403)

        if uid is None:
            await enqueue_shared_input(db_session, config, msg, req)
            await db_session.commit()
            return Response(status_code=202)

        user = await users.get_user(db_session, config, uid)
        if not user:
            logger.info(f"inbox: unknown user {uid}")
            return Response(status_code=404)

        if (digest := request.headers.get("digest")) and digest != compute_digest(
            body
        ):
            logger.info(f"inbox: digest mismatch for {ap_id}")
            return Response(status_code=400)

        actor_id = msg.get("actor")
        if isinstance(actor_id, str) and await users.is_muted(
            db_session, user, actor_id
        ):
            logger.info(f"inbox: dropped activity from muted actor {actor_id}")
            return Response(status_code=403)

        await enqueue_input(db_session, config, user, msg, req)
        await db_session.commit()
        logger.info(f"inbox: enqueued {msg.get('type')} {ap_id} for {user.uid}")
        return Response(status_code=202)

    @app.post("/shared-inbox")
    async def shared_inbox(
        request: Request,
        db_session: AsyncSession = Depends(get_db_session),
    ) -> Response:
        return await _receive(request, db_session, None)

    @app.post("/{uid}/inbox")
    async def inbox(
        uid: str,
        request: Request,
        db_session: AsyncSession = Depends(get_db_session),
    ) -> Response:
        return await _receive(request, db_session, uid)

    @app.get("/.well-known/webfinger")
    async def wellknown_webfinger(
        resource: str,
        db_session: AsyncSession = Depends(get_db_session),
    ) -> JSONResponse:
        """Exposes/servers WebFinger data."""
        out = await webfinger_response(db_session, config, resource)
        if not out:
            raise HTTPException(status_code=404)

        return JSONResponse(
            out,
            media_type="application/jrd+json; charset=utf-8",
            headers={"Access-Control-Allow-Origin": "*"},
        )

    @app.get("/{uid}")
    async def actor(
        uid: str,
        db_session: AsyncSession = Depends(get_db_session),
    ) -> ActivityPubResponse:
        user = await _get_user_or_404(db_session, uid)
        return ActivityPubResponse(msg_actor(user))

    @app.get("/{uid}/outbox")
    async def outbox(
        uid: str,
        db_session: AsyncSession = Depends(get_db_session),
    ) -> ActivityPubResponse:
        user = await _get_user_or_404(db_session, uid)

        # Only the last public notes are shown
        notes = (
            await db_session.scalars(
                select(models.Object)
                .where(
                    models.Object.ap_id.like(f"{user.actor_id}/p/%"),
                    models.Object.ap_type == "Note",
                )
                .order_by(models.Object.created_at.desc())
            )
        ).all()
        items = [
            ap.remove_context(msg_create(user, note.ap_object))
            for note in notes
            if ap.is_public(note.ap_object)
        ][:_OUTBOX_SIZE]

        out = msg_collection(user, f"{user.actor_id}/outbox")
        out["@context"] = ap.AS_EXTENDED_CTX
        out["orderedItems"] = items
        out["totalItems"] = len(items)
        return ActivityPubResponse(out)

    @app.get("/{uid}/followers")
    async def followers(
        uid: str,
        db_session: AsyncSession = Depends(get_db_session),
    ) -> ActivityPubResponse:
        user = await _get_user_or_404(db_session, uid)
        return ActivityPubResponse(msg_collection(user, f"{user.actor_id}/followers"))

    @app.get("/{uid}/following")
    async def following(
        uid: str,
        db_session: AsyncSession = Depends(get_db_session),
    ) -> ActivityPubResponse:
        user = await _get_user_or_404(db_session, uid)
        return ActivityPubResponse(msg_collection(user, f"{user.actor_id}/following"))

    @app.get("/{uid}/p/{post_id}")
    async def post_by_id(
        uid: str,
        post_id: str,
        db_session: AsyncSession = Depends(get_db_session),
    ) -> ActivityPubResponse:
        user = await _get_user_or_404(db_session, uid)
        obj = await objects.get_object(db_session, f"{user.actor_id}/p/{post_id}")
        if not obj or not ap.is_public(obj.ap_object):
            raise HTTPException(status_code=404)

        out: dict[str, Any] = obj.ap_object
        return ActivityPubResponse(out)

    return app


def get_app() -> FastAPI:
    """Application factory for uvicorn."""
    config = load_config()
    _configure_logger(config)
    return create_app(config)
