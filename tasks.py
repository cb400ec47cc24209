import asyncio
import json
import sys
import traceback
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Optional

from invoke import Context  # type: ignore
from invoke import run  # type: ignore
from invoke import task  # type: ignore


def _run_as_user(uid, action):
    # type: (str, Callable[..., Awaitable[Any]]) -> Any
    """Runs `action(db_session, config, user)` and prints its result."""
    from loguru import logger

    from fedbox.config import load_config
    from fedbox.database import Database
    from fedbox.users import get_user

    logger.disable("fedbox")
    config = load_config()

    async def _run() -> Any:
        async with Database(config).async_session() as db_session:
            user = await get_user(db_session, config, uid)
            if not user:
                print(f"ERROR: unknown user {uid}")
                sys.exit(1)
            return await action(db_session, config, user)

    try:
        out = asyncio.run(_run())
    except ValueError as exc:
        print(f"ERROR: {exc}")
        sys.exit(1)

    if out is not None:
        print(json.dumps(out, indent=4))
    return out


@task
def init(ctx):
    # type: (Context) -> None
    from fedbox.config import load_config
    from fedbox.database import Database

    config = load_config()
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    asyncio.run(Database(config).create_all())
    print(f"Database ready at {config.db_path}")


@task
def adduser(ctx, uid, name="", bio="", email=None, bot=False):
    # type: (Context, str, str, str, Optional[str], bool) -> None
    from loguru import logger

    from fedbox.config import UserConfig
    from fedbox.config import load_config
    from fedbox.database import Database
    from fedbox.users import create_user

    logger.disable("fedbox")
    config = load_config()

    async def _adduser() -> None:
        async with Database(config).async_session() as db_session:
            user = await create_user(
                db_session,
                config,
                uid,
                UserConfig(name=name or uid, bio=bio, email=email, bot=bot),
            )
            await db_session.commit()
            print(f"Created {user.handle} ({user.actor_id})")

    try:
        asyncio.run(_adduser())
    except ValueError as exc:
        print(f"ERROR: {exc}")
        sys.exit(1)


@task
def autoformat(ctx):
    # type: (Context) -> None
    run("black .", echo=True)
    run("isort -sl .", echo=True)


@task
def lint(ctx):
    # type: (Context) -> None
    run("black --check .", echo=True)
    run("isort -sl --check-only .", echo=True)
    run("flake8 .", echo=True)
    run("mypy .", echo=True)


@task
def uvicorn(ctx):
    # type: (Context) -> None
    run(
        "uvicorn fedbox.main:get_app --factory --no-server-header",
        pty=True,
        echo=True,
    )


@task
def process_queues(ctx):
    # type: (Context) -> None
    from fedbox.config import load_config
    from fedbox.queue import loop

    asyncio.run(loop(load_config()))


@task
def purge(ctx):
    # type: (Context) -> None
    from fedbox.config import load_config
    from fedbox.prune import run_prune_old_data

    asyncio.run(run_prune_old_data(load_config()))


@task
def tests(ctx, k=None):
    # type: (Context, Optional[str]) -> None
    pytest_args = " -vvv"
    if k:
        pytest_args += f" -k {k}"
    run(f"pytest tests{pytest_args}", pty=True, echo=True)


@task
def webfinger(ctx, account):
    # type: (Context, str) -> None
    from loguru import logger

    from fedbox.config import load_config
    from fedbox.database import Database
    from fedbox.webfinger import resolve_handle

    logger.disable("fedbox")
    config = load_config()
    print(f"Resolving {account}")

    async def _resolve() -> tuple[int, Optional[str], Optional[str]]:
        async with Database(config).async_session() as db_session:
            return await resolve_handle(db_session, config, account)

    try:
        status, actor_id, handle = asyncio.run(_resolve())
    except Exception as exc:
        print(f"ERROR: Failed to resolve {account}")
        print("".join(traceback.format_exception(exc)))
        return

    if actor_id:
        print(f"SUCCESS: {actor_id} ({handle})")
    else:
        print(f"ERROR: Failed to resolve {account}: {status}")


@task
def request(ctx, user, url):
    # type: (Context, str, str) -> None
    from fedbox import activitypub as ap

    async def _request(db_session, config, local_user):
        try:
            return await ap.fetch(config, url, key=local_user.key)
        except ap.FetchError as exc:
            print(f"ERROR: {exc}")
            return None

    _run_as_user(user, _request)


@task
def actor(ctx, user, url):
    # type: (Context, str, str) -> None
    from fedbox import activitypub as ap
    from fedbox.actor import resolve_actor

    async def _actor(db_session, config, local_user):
        status, ap_actor = await resolve_actor(db_session, config, url)
        await db_session.commit()
        if not ap.is_valid_status(status):
            print(f"ERROR: {status}")
        return ap_actor

    _run_as_user(user, _actor)


@task
def follow(ctx, user, account):
    # type: (Context, str, str) -> None
    from fedbox.boxes import send_follow

    async def _follow(db_session, config, local_user):
        return await send_follow(db_session, config, local_user, account)

    _run_as_user(user, _follow)


@task
def unfollow(ctx, user, actor_id):
    # type: (Context, str, str) -> None
    from fedbox.boxes import send_unfollow

    async def _unfollow(db_session, config, local_user):
        return await send_unfollow(db_session, config, local_user, actor_id)

    _run_as_user(user, _unfollow)


@task(iterable=["to", "attach"])
def note(ctx, user, content, to=None, in_reply_to=None, attach=None, private=False):
    # type: (Context, str, str, Optional[list[str]], Optional[str], Optional[list[str]], bool) -> None  # noqa: E501
    from fedbox.boxes import send_note

    async def _note(db_session, config, local_user):
        return await send_note(
            db_session,
            config,
            local_user,
            content,
            rcpts=to or None,
            in_reply_to=in_reply_to,
            attachments=[(url, "") for url in attach or []],
            private=private,
        )

    _run_as_user(user, _note)


@task(iterable=["option"])
def question(ctx, user, content, option=None, multiple=False, end_secs=86400):
    # type: (Context, str, str, Optional[list[str]], bool, int) -> None
    from fedbox.boxes import send_question

    async def _question(db_session, config, local_user):
        return await send_question(
            db_session,
            config,
            local_user,
            content,
            option or [],
            multiple=multiple,
            end_secs=int(end_secs),
        )

    _run_as_user(user, _question)


@task
def like(ctx, user, object_id):
    # type: (Context, str, str) -> None
    from fedbox.boxes import send_like

    async def _like(db_session, config, local_user):
        return await send_like(db_session, config, local_user, object_id)

    _run_as_user(user, _like)


@task
def announce(ctx, user, object_id):
    # type: (Context, str, str) -> None
    from fedbox.boxes import send_announce

    async def _announce(db_session, config, local_user):
        return await send_announce(db_session, config, local_user, object_id)

    _run_as_user(user, _announce)


@task
def ping(ctx, user, account):
    # type: (Context, str, str) -> None
    from fedbox.boxes import send_ping

    async def _ping(db_session, config, local_user):
        return await send_ping(db_session, config, local_user, account)

    _run_as_user(user, _ping)


@task
def update_profile(ctx, user):
    # type: (Context, str) -> None
    from fedbox.boxes import send_update_profile

    async def _update(db_session, config, local_user):
        return await send_update_profile(db_session, local_user)

    _run_as_user(user, _update)


@task
def delete(ctx, user, object_id):
    # type: (Context, str, str) -> None
    from fedbox.boxes import send_delete

    async def _delete(db_session, config, local_user):
        return await send_delete(db_session, local_user, object_id)

    _run_as_user(user, _delete)


def _instance_toggle(action, hostname):
    # type: (str, str) -> None
    from loguru import logger

    from fedbox import boxes
    from fedbox.config import load_config
    from fedbox.database import Database

    logger.disable("fedbox")
    config = load_config()

    async def _toggle() -> bool:
        async with Database(config).async_session() as db_session:
            return await getattr(boxes, action)(db_session, hostname)

    changed = asyncio.run(_toggle())
    print(f"{action} {hostname}: {'done' if changed else 'nothing to do'}")


@task
def block(ctx, hostname):
    # type: (Context, str) -> None
    _instance_toggle("block", hostname)


@task
def unblock(ctx, hostname):
    # type: (Context, str) -> None
    _instance_toggle("unblock", hostname)


def _actor_toggle(action, uid, actor_id):
    # type: (str, str, str) -> None
    from fedbox import boxes

    async def _toggle(db_session, config, local_user):
        await getattr(boxes, action)(db_session, local_user, actor_id)
        print(f"{local_user.uid} {action} {actor_id}: done")

    _run_as_user(uid, _toggle)


@task
def mute(ctx, user, actor_id):
    # type: (Context, str, str) -> None
    _actor_toggle("mute", user, actor_id)


@task
def unmute(ctx, user, actor_id):
    # type: (Context, str, str) -> None
    _actor_toggle("unmute", user, actor_id)


@task
def limit(ctx, user, actor_id):
    # type: (Context, str, str) -> None
    _actor_toggle("limit", user, actor_id)


@task
def unlimit(ctx, user, actor_id):
    # type: (Context, str, str) -> None
    _actor_toggle("unlimit", user, actor_id)


@task
def hide(ctx, user, object_id):
    # type: (Context, str, str) -> None
    _actor_toggle("hide", user, object_id)
