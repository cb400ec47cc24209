"""User store: local users, their follow graph, policies and timelines."""
from functools import cached_property

from loguru import logger
from sqlalchemy import delete
from sqlalchemy import func
from sqlalchemy import select

from fedbox import activitypub as ap
from fedbox import models
from fedbox import objects
from fedbox.config import Config
from fedbox.config import UserConfig
from fedbox.database import AsyncSession
from fedbox.key import Key
from fedbox.key import generate_key
from fedbox.utils.datetime import now


class LocalUser:
    def __init__(self, config: Config, user: models.User) -> None:
        self.server_config = config
        self.user = user

    @property
    def id(self) -> int:
        return self.user.id

    @property
    def uid(self) -> str:
        return self.user.uid

    @property
    def actor_id(self) -> str:
        return f"{self.server_config.base_url}/{self.uid}"

    @property
    def handle(self) -> str:
        return f"{self.uid}@{self.server_config.host}"

    @property
    def config(self) -> UserConfig:
        return self.user.user_config

    @cached_property
    def key(self) -> Key:
        k = Key(self.actor_id, f"{self.actor_id}#main-key")
        k.load(self.user.private_key_pem)
        return k

    def owns(self, ap_id: str | None) -> bool:
        """Returns True for the actor itself and anything under it."""
        if not ap_id:
            return False
        return ap_id == self.actor_id or ap_id.startswith(self.actor_id + "/")

    def __repr__(self) -> str:
        return f"LocalUser({self.uid!r})"


async def get_user(
    db_session: AsyncSession,
    config: Config,
    uid: str,
) -> LocalUser | None:
    user = (
        await db_session.scalars(select(models.User).where(models.User.uid == uid))
    ).one_or_none()
    if not user:
        return None
    return LocalUser(config, user)


async def get_user_by_id(
    db_session: AsyncSession,
    config: Config,
    user_id: int,
) -> LocalUser | None:
    user = await db_session.get(models.User, user_id)
    if not user:
        return None
    return LocalUser(config, user)


async def list_users(db_session: AsyncSession, config: Config) -> list[LocalUser]:
    return [
        LocalUser(config, user)
        for user in (
            await db_session.scalars(select(models.User).order_by(models.User.id))
        ).all()
    ]


async def get_user_by_actor_id(
    db_session: AsyncSession,
    config: Config,
    actor_id: str,
) -> LocalUser | None:
    for user in await list_users(db_session, config):
        if user.actor_id == actor_id:
            return user
    return None


async def create_user(
    db_session: AsyncSession,
    config: Config,
    uid: str,
    user_config: UserConfig | None = None,
    private_key_pem: str | None = None,
) -> LocalUser:
    if await get_user(db_session, config, uid):
        raise ValueError(f"User {uid} already exists")

    user = models.User(
        uid=uid,
        private_key_pem=private_key_pem or generate_key(),
        config=(user_config or UserConfig(name=uid)).dict(),
    )
    db_session.add(user)
    await db_session.flush()
    await db_session.refresh(user)
    logger.info(f"Created user {uid}")
    return LocalUser(config, user)


async def update_user_config(
    db_session: AsyncSession,
    user: LocalUser,
    user_config: UserConfig,
) -> None:
    user.user.config = user_config.dict()
    await db_session.flush()


# Followers


async def follower_check(
    db_session: AsyncSession,
    user: LocalUser,
    actor_id: str,
) -> bool:
    return bool(
        (
            await db_session.scalars(
                select(models.Follower.id).where(
                    models.Follower.user_id == user.id,
                    models.Follower.ap_actor_id == actor_id,
                )
            )
        ).one_or_none()
    )


async def follower_add(
    db_session: AsyncSession,
    user: LocalUser,
    actor_id: str,
    follow_activity: ap.RawObject | None = None,
) -> bool:
    if await follower_check(db_session, user, actor_id):
        logger.info(f"{actor_id} already follows {user.uid}")
        return False

    db_session.add(
        models.Follower(
            user_id=user.id,
            ap_actor_id=actor_id,
            ap_object=follow_activity,
        )
    )
    await db_session.flush()
    return True


async def follower_del(
    db_session: AsyncSession,
    user: LocalUser,
    actor_id: str,
) -> bool:
    result = await db_session.execute(
        delete(models.Follower).where(
            models.Follower.user_id == user.id,
            models.Follower.ap_actor_id == actor_id,
        )
    )
    return result.rowcount > 0  # type: ignore


async def follower_list(db_session: AsyncSession, user: LocalUser) -> list[str]:
    return (
        await db_session.scalars(
            select(models.Follower.ap_actor_id)
            .where(models.Follower.user_id == user.id)
            .order_by(models.Follower.id)
        )
    ).all()


# Following


async def get_following(
    db_session: AsyncSession,
    user: LocalUser,
    actor_id: str,
) -> models.Following | None:
    return (
        await db_session.scalars(
            select(models.Following).where(
                models.Following.user_id == user.id,
                models.Following.ap_actor_id == actor_id,
            )
        )
    ).one_or_none()


async def following_check(
    db_session: AsyncSession,
    user: LocalUser,
    actor_id: str,
) -> bool:
    """True for both pending and confirmed edges."""
    return await get_following(db_session, user, actor_id) is not None


async def following_add(
    db_session: AsyncSession,
    user: LocalUser,
    actor_id: str,
    follow_activity: ap.RawObject,
) -> models.Following:
    if following := await get_following(db_session, user, actor_id):
        following.ap_object = follow_activity
        following.updated_at = now()
    else:
        following = models.Following(
            user_id=user.id,
            ap_actor_id=actor_id,
            ap_object=follow_activity,
            is_accepted=False,
        )
        db_session.add(following)

    await db_session.flush()
    return following


async def following_confirm(
    db_session: AsyncSession,
    user: LocalUser,
    actor_id: str,
    accept_activity: ap.RawObject,
) -> bool:
    following = await get_following(db_session, user, actor_id)
    if not following:
        return False

    following.ap_object = accept_activity
    following.is_accepted = True
    following.updated_at = now()
    await db_session.flush()
    return True


async def following_del(
    db_session: AsyncSession,
    user: LocalUser,
    actor_id: str,
) -> bool:
    result = await db_session.execute(
        delete(models.Following).where(
            models.Following.user_id == user.id,
            models.Following.ap_actor_id == actor_id,
        )
    )
    return result.rowcount > 0  # type: ignore


async def following_list(db_session: AsyncSession, user: LocalUser) -> list[str]:
    return (
        await db_session.scalars(
            select(models.Following.ap_actor_id)
            .where(models.Following.user_id == user.id)
            .order_by(models.Following.id)
        )
    ).all()


# Policies


async def _has_row(db_session: AsyncSession, model, *where) -> bool:
    return bool((await db_session.scalars(select(model.id).where(*where))).first())


async def is_muted(db_session: AsyncSession, user: LocalUser, actor_id: str) -> bool:
    return await _has_row(
        db_session,
        models.MutedActor,
        models.MutedActor.user_id == user.id,
        models.MutedActor.ap_actor_id == actor_id,
    )


async def mute(db_session: AsyncSession, user: LocalUser, actor_id: str) -> None:
    if not await is_muted(db_session, user, actor_id):
        db_session.add(models.MutedActor(user_id=user.id, ap_actor_id=actor_id))
        await db_session.flush()
        logger.info(f"{user.uid} muted {actor_id}")


async def unmute(db_session: AsyncSession, user: LocalUser, actor_id: str) -> None:
    await db_session.execute(
        delete(models.MutedActor).where(
            models.MutedActor.user_id == user.id,
            models.MutedActor.ap_actor_id == actor_id,
        )
    )


async def is_limited(
    db_session: AsyncSession,
    user: LocalUser,
    actor_id: str,
) -> bool:
    return await _has_row(
        db_session,
        models.LimitedActor,
        models.LimitedActor.user_id == user.id,
        models.LimitedActor.ap_actor_id == actor_id,
    )


async def limit(db_session: AsyncSession, user: LocalUser, actor_id: str) -> None:
    if not await is_limited(db_session, user, actor_id):
        db_session.add(models.LimitedActor(user_id=user.id, ap_actor_id=actor_id))
        await db_session.flush()
        logger.info(f"{user.uid} limited {actor_id}")


async def unlimit(db_session: AsyncSession, user: LocalUser, actor_id: str) -> None:
    await db_session.execute(
        delete(models.LimitedActor).where(
            models.LimitedActor.user_id == user.id,
            models.LimitedActor.ap_actor_id == actor_id,
        )
    )


async def is_hidden(db_session: AsyncSession, user: LocalUser, ap_id: str) -> bool:
    return await _has_row(
        db_session,
        models.HiddenObject,
        models.HiddenObject.user_id == user.id,
        models.HiddenObject.object_ap_id == ap_id,
    )


async def hide(db_session: AsyncSession, user: LocalUser, ap_id: str) -> None:
    if not await is_hidden(db_session, user, ap_id):
        db_session.add(models.HiddenObject(user_id=user.id, object_ap_id=ap_id))
        await db_session.flush()


# Timeline


async def timeline_here(db_session: AsyncSession, user: LocalUser, ap_id: str) -> bool:
    return await _has_row(
        db_session,
        models.TimelineEntry,
        models.TimelineEntry.user_id == user.id,
        models.TimelineEntry.object_ap_id == ap_id,
    )


async def timeline_add(
    db_session: AsyncSession,
    user: LocalUser,
    ap_id: str,
    ap_object: ap.RawObject,
) -> bool:
    """Stores the object and links it to the user timeline.

    Returns True only when the entry is new to this timeline.
    """
    await objects.save_object(db_session, ap_object, ap_id)
    if await timeline_here(db_session, user, ap_id):
        return False

    db_session.add(models.TimelineEntry(user_id=user.id, object_ap_id=ap_id))
    await db_session.flush()
    logger.debug(f"Added {ap_id} to {user.uid} timeline")
    return True


async def timeline_del(db_session: AsyncSession, user: LocalUser, ap_id: str) -> bool:
    entries = await db_session.execute(
        delete(models.TimelineEntry).where(
            models.TimelineEntry.user_id == user.id,
            models.TimelineEntry.object_ap_id == ap_id,
        )
    )
    deleted_object = await objects.delete_object(db_session, ap_id)
    return entries.rowcount > 0 or deleted_object  # type: ignore


async def timeline_admire(
    db_session: AsyncSession,
    user: LocalUser,
    object_id: str,
    actor_id: str,
    kind: models.AdmirationKind,
) -> bool:
    """Records a like or a boost, at most once per actor, object and kind."""
    created = False
    if await _has_row(
        db_session,
        models.Admiration,
        models.Admiration.object_ap_id == object_id,
        models.Admiration.ap_actor_id == actor_id,
        models.Admiration.kind == kind,
    ):
        logger.info(f"Repeated {kind.value} from {actor_id} on {object_id}")
    else:
        db_session.add(
            models.Admiration(
                object_ap_id=object_id,
                ap_actor_id=actor_id,
                kind=kind,
            )
        )
        await db_session.flush()
        created = True

    # Boosted posts show up in the timeline
    if kind == models.AdmirationKind.ANNOUNCE and not user.owns(object_id):
        if obj := await objects.get_object(db_session, object_id):
            await timeline_add(db_session, user, object_id, obj.ap_object)

    return created


async def admiration_count(
    db_session: AsyncSession,
    object_id: str,
    kind: models.AdmirationKind,
) -> int:
    return await db_session.scalar(
        select(func.count(models.Admiration.id)).where(
            models.Admiration.object_ap_id == object_id,
            models.Admiration.kind == kind,
        )
    )


async def timeline_touch(db_session: AsyncSession, user: LocalUser) -> None:
    user.user.timeline_touched_at = now()
    await db_session.flush()
