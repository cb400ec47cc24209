import enum

from sqlalchemy import JSON
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum
from sqlalchemy import ForeignKey
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import relationship

from fedbox.actor import Actor as BaseActor
from fedbox.config import UserConfig
from fedbox.database import Base
from fedbox.utils.datetime import now


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    uid = Column(String, unique=True, nullable=False, index=True)
    private_key_pem = Column(String, nullable=False)
    config = Column(JSON, nullable=False, default=dict)

    timeline_touched_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def user_config(self) -> UserConfig:
        return UserConfig.parse_obj(self.config or {})


class Actor(Base, BaseActor):
    __tablename__ = "actors"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now)

    ap_id = Column(String, unique=True, nullable=False, index=True)
    fingerprint = Column(String, unique=True, nullable=False, index=True)
    ap_actor = Column(JSON, nullable=False)
    ap_type = Column(String, nullable=False)


class Object(Base):
    __tablename__ = "objects"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now)

    ap_id = Column(String, unique=True, nullable=False, index=True)
    fingerprint = Column(String, unique=True, nullable=False, index=True)
    ap_type = Column(String, nullable=True)
    ap_object = Column(JSON, nullable=False)

    # Denormalized for children lookups and purge
    in_reply_to = Column(String, nullable=True, index=True)
    attributed_to = Column(String, nullable=True, index=True)


class TimelineEntry(Base):
    __tablename__ = "timeline_entries"
    __table_args__ = (
        UniqueConstraint("user_id", "object_ap_id", name="uix_timeline_entry"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    user = relationship(User, uselist=False)

    object_ap_id = Column(String, nullable=False, index=True)


class Follower(Base):
    __tablename__ = "followers"
    __table_args__ = (
        UniqueConstraint("user_id", "ap_actor_id", name="uix_follower"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    ap_actor_id = Column(String, nullable=False)

    # The Follow activity
    ap_object = Column(JSON, nullable=True)


class Following(Base):
    __tablename__ = "following"
    __table_args__ = (
        UniqueConstraint("user_id", "ap_actor_id", name="uix_following"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    ap_actor_id = Column(String, nullable=False)

    # The Follow activity while pending, the Accept once confirmed
    ap_object = Column(JSON, nullable=True)
    is_accepted = Column(Boolean, nullable=False, default=False)


class MutedActor(Base):
    __tablename__ = "muted_actors"
    __table_args__ = (
        UniqueConstraint("user_id", "ap_actor_id", name="uix_muted_actor"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    ap_actor_id = Column(String, nullable=False)


class LimitedActor(Base):
    __tablename__ = "limited_actors"
    __table_args__ = (
        UniqueConstraint("user_id", "ap_actor_id", name="uix_limited_actor"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    ap_actor_id = Column(String, nullable=False)


class HiddenObject(Base):
    __tablename__ = "hidden_objects"
    __table_args__ = (
        UniqueConstraint("user_id", "object_ap_id", name="uix_hidden_object"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    object_ap_id = Column(String, nullable=False)


class AdmirationKind(str, enum.Enum):
    LIKE = "like"
    ANNOUNCE = "announce"


class Admiration(Base):
    __tablename__ = "admirations"
    __table_args__ = (
        UniqueConstraint(
            "object_ap_id", "ap_actor_id", "kind", name="uix_admiration"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    object_ap_id = Column(String, nullable=False, index=True)
    ap_actor_id = Column(String, nullable=False)
    kind = Column(Enum(AdmirationKind), nullable=False)


class SharedInbox(Base):
    __tablename__ = "shared_inboxes"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    url = Column(String, unique=True, nullable=False)


class BlockedInstance(Base):
    __tablename__ = "blocked_instances"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    hostname = Column(String, unique=True, nullable=False)


class QueueItemKind(str, enum.Enum):
    MESSAGE = "message"
    OUTPUT = "output"
    INPUT = "input"
    SHARED_INPUT = "shared_input"
    CLOSE_QUESTION = "close_question"
    REQUEST_REPLIES = "request_replies"
    EMAIL = "email"
    CHAT = "chat"
    PURGE = "purge"


class QueueItem(Base):
    __tablename__ = "queue_items"
    __table_args__ = (Index("ix_queue_items_next_try", "user_id", "next_try"),)

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    kind = Column(Enum(QueueItemKind), nullable=False)

    # Set for per-user items, NULL for the global queue
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    user = relationship(User, uselist=False)

    payload = Column(JSON, nullable=False, default=dict)

    retries = Column(Integer, nullable=False, default=0)
    last_status = Column(Integer, nullable=True)
    next_try = Column(DateTime(timezone=True), nullable=False, default=now)


class NotificationType(str, enum.Enum):
    NEW_FOLLOWER = "new_follower"
    UNFOLLOW = "unfollow"
    LIKE = "like"
    ANNOUNCE = "announce"
    MENTION = "mention"
    POLL_CLOSED = "poll_closed"
    OTHER = "other"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    notification_type = Column(Enum(NotificationType), nullable=False)
    is_new = Column(Boolean, nullable=False, default=True)

    activity_type = Column(String, nullable=False)
    nested_type = Column(String, nullable=True)
    ap_actor_id = Column(String, nullable=False)
    object_ap_id = Column(String, nullable=True)


class ErrorArchive(Base):
    __tablename__ = "error_archives"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    kind = Column(String, nullable=False)
    error = Column(String, nullable=False)
    request = Column(JSON, nullable=True)
    payload = Column(JSON, nullable=True)
