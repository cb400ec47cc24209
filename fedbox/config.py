import os
from pathlib import Path

import pydantic
import tomli

ROOT_DIR = Path().parent.resolve()
_CONFIG_FILE = os.getenv("FEDBOX_CONFIG_FILE", "data/fedbox.toml")

VERSION = "1.0.0"
USER_AGENT = f"fedbox/{VERSION}"
AP_CONTENT_TYPE = "application/activity+json"


class _BlockedServer(pydantic.BaseModel):
    hostname: str
    reason: str | None = None


class Config(pydantic.BaseModel):
    host: str
    prefix: str = ""
    https: bool = True

    # Extra hosts answered locally by the webfinger resolver
    webfinger_domains: list[str] = []
    webfinger_scheme: str = "https"

    data_dir: str = "data"
    sqlalchemy_database: str | None = None

    queue_retry_max: int = 10
    queue_retry_minutes: int = 2
    queue_timeout: int = 3
    queue_timeout_2: int = 20

    actor_refresh_hours: int = 24
    max_thread_depth: int = 256
    timeline_purge_days: int = 120
    queue_purge_days: int = 7

    blocked_servers: list[_BlockedServer] = []

    disable_inbox_collection: bool = False
    disable_email_notifications: bool = False
    shared_inboxes: bool = False

    smtp_host: str = "localhost"
    smtp_port: int = 25

    debug: bool = False

    @property
    def scheme(self) -> str:
        return "https" if self.https else "http"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}{self.prefix}"

    @property
    def db_path(self) -> Path:
        if self.sqlalchemy_database:
            return Path(self.sqlalchemy_database)
        return ROOT_DIR / self.data_dir / "fedbox.db"

    @property
    def blocked_hostnames(self) -> set[str]:
        return {blocked_server.hostname for blocked_server in self.blocked_servers}

    def is_local_host(self, host: str) -> bool:
        return host == self.host or host in self.webfinger_domains


class UserConfig(pydantic.BaseModel):
    name: str = ""
    bio: str = ""
    bot: bool = False

    email: str | None = None
    telegram_bot: str | None = None
    telegram_chat_id: str | None = None

    drop_dm_from_unknown: bool = False


def load_config(path: str | Path | None = None) -> Config:
    config_file = Path(path) if path else ROOT_DIR / _CONFIG_FILE
    try:
        return Config.parse_obj(tomli.loads(config_file.read_text()))
    except FileNotFoundError:
        raise ValueError(f"Please create a config file, {config_file} is missing")
