from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .exceptions import ConfigError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}

BOT_MODES = {"public", "private"}


@dataclass(slots=True)
class MongoSettings:
    uri: str | None = None
    db_name: str = "hyperwa"
    auth_collection: str = "auth"
    session_id: str = "session"
    server_selection_timeout_ms: int = 10_000


@dataclass(slots=True)
class AuthSettings:
    auth_dir: Path = Path("./auth_info")
    use_mongo_auth: bool = True
    debounce_s: float = 10.0
    # Extra files/dirs (relative to the auth dir's parent) removed when a
    # stored session turns out to be corrupted.
    corruption_cleanup: tuple[str, ...] = ()


@dataclass(slots=True)
class BackoffSettings:
    base_s: float = 1.0
    max_s: float = 30.0
    jitter: float = 0.0


@dataclass(slots=True)
class BotSettings:
    name: str = "HyperWa"
    version: str = "3.0.0"
    prefix: str = "."
    owner: str | None = None
    send_startup_message: bool = True
    # "public": anyone may run public commands; "private": owner and admins only.
    mode: str = "public"
    admins: tuple[str, ...] = ()
    blocked_users: tuple[str, ...] = ()
    send_permission_error: bool = False
    rate_limiting: bool = True
    rate_limit_commands: int = 10
    rate_limit_window_s: float = 60.0


@dataclass(slots=True)
class LogSettings:
    level: str = "INFO"
    json: bool = False


@dataclass(slots=True)
class Settings:
    mongo: MongoSettings = field(default_factory=MongoSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    bot: BotSettings = field(default_factory=BotSettings)
    log: LogSettings = field(default_factory=LogSettings)

    def validate(self) -> None:
        if self.auth.use_mongo_auth and not self.mongo.uri:
            raise ConfigError("MongoDB URI is missing; set MONGO_URI or disable mongo auth")
        if self.auth.debounce_s < 0:
            raise ConfigError("debounce interval must be >= 0")
        if self.backoff.base_s <= 0 or self.backoff.max_s < self.backoff.base_s:
            raise ConfigError("backoff requires 0 < base_s <= max_s")
        if not 0.0 <= self.backoff.jitter <= 1.0:
            raise ConfigError("backoff jitter must be within [0, 1]")
        if self.bot.mode not in BOT_MODES:
            raise ConfigError(f"bot mode must be one of {sorted(BOT_MODES)}, got {self.bot.mode!r}")
        if self.bot.rate_limit_commands < 1 or self.bot.rate_limit_window_s <= 0:
            raise ConfigError("rate limit requires at least 1 command per positive window")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        s = cls()

        s.mongo.uri = env.get("MONGO_URI") or None
        s.mongo.db_name = env.get("MONGO_DB_NAME", s.mongo.db_name)
        s.mongo.auth_collection = env.get("MONGO_AUTH_COLLECTION", s.mongo.auth_collection)

        if "HYPERWA_AUTH_DIR" in env:
            s.auth.auth_dir = Path(env["HYPERWA_AUTH_DIR"])
        if "HYPERWA_USE_MONGO_AUTH" in env:
            s.auth.use_mongo_auth = _parse_bool("HYPERWA_USE_MONGO_AUTH", env["HYPERWA_USE_MONGO_AUTH"])
        if "HYPERWA_DEBOUNCE_S" in env:
            s.auth.debounce_s = _parse_float("HYPERWA_DEBOUNCE_S", env["HYPERWA_DEBOUNCE_S"])
        if "HYPERWA_CORRUPTION_CLEANUP" in env:
            s.auth.corruption_cleanup = _parse_list(env["HYPERWA_CORRUPTION_CLEANUP"])

        if "HYPERWA_BACKOFF_BASE_S" in env:
            s.backoff.base_s = _parse_float("HYPERWA_BACKOFF_BASE_S", env["HYPERWA_BACKOFF_BASE_S"])
        if "HYPERWA_BACKOFF_MAX_S" in env:
            s.backoff.max_s = _parse_float("HYPERWA_BACKOFF_MAX_S", env["HYPERWA_BACKOFF_MAX_S"])
        if "HYPERWA_BACKOFF_JITTER" in env:
            s.backoff.jitter = _parse_float("HYPERWA_BACKOFF_JITTER", env["HYPERWA_BACKOFF_JITTER"])

        s.bot.owner = env.get("HYPERWA_BOT_OWNER") or None
        s.bot.prefix = env.get("HYPERWA_PREFIX", s.bot.prefix)
        s.bot.name = env.get("HYPERWA_BOT_NAME", s.bot.name)
        s.bot.mode = env.get("HYPERWA_MODE", s.bot.mode).strip().lower()
        if "HYPERWA_BOT_ADMINS" in env:
            s.bot.admins = _parse_list(env["HYPERWA_BOT_ADMINS"])
        if "HYPERWA_BLOCKED_USERS" in env:
            s.bot.blocked_users = _parse_list(env["HYPERWA_BLOCKED_USERS"])
        if "HYPERWA_RATE_LIMITING" in env:
            s.bot.rate_limiting = _parse_bool("HYPERWA_RATE_LIMITING", env["HYPERWA_RATE_LIMITING"])

        s.log.level = env.get("HYPERWA_LOG_LEVEL", s.log.level).upper()
        if "HYPERWA_LOG_JSON" in env:
            s.log.json = _parse_bool("HYPERWA_LOG_JSON", env["HYPERWA_LOG_JSON"])
        return s

    @classmethod
    def from_dotted(cls, values: Mapping[str, Any], *, base: Settings | None = None) -> Settings:
        """
        Build settings from a flat mapping of legacy dotted keys.

        Older deployments kept configuration as nested objects addressed by
        strings like `"mongo.uri"` or `"auth.useMongoAuth"`. This adapter maps
        the known keys onto the typed fields and rejects anything else.
        """

        s = base or cls()
        for key, value in values.items():
            setter = _DOTTED_KEYS.get(key)
            if setter is None:
                raise ConfigError(f"unknown config key: {key!r}")
            setter(s, value)
        return s


def _parse_bool(name: str, raw: str | bool) -> bool:
    if isinstance(raw, bool):
        return raw
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"{name}: expected a boolean, got {raw!r}")


def _parse_float(name: str, raw: str | float | int) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name}: expected a number, got {raw!r}") from e


def _parse_list(raw: str | list[str] | tuple[str, ...]) -> tuple[str, ...]:
    items = raw.split(",") if isinstance(raw, str) else raw
    return tuple(str(p).strip() for p in items if str(p).strip())


def _set_mongo_uri(s: Settings, v: Any) -> None:
    s.mongo.uri = str(v) if v else None


def _set_mongo_db(s: Settings, v: Any) -> None:
    s.mongo.db_name = str(v)


def _set_use_mongo_auth(s: Settings, v: Any) -> None:
    s.auth.use_mongo_auth = _parse_bool("auth.useMongoAuth", v)


def _set_auth_dir(s: Settings, v: Any) -> None:
    s.auth.auth_dir = Path(v)


def _set_debounce(s: Settings, v: Any) -> None:
    s.auth.debounce_s = _parse_float("auth.debounceSeconds", v)


def _set_owner(s: Settings, v: Any) -> None:
    s.bot.owner = str(v) if v else None


def _set_prefix(s: Settings, v: Any) -> None:
    s.bot.prefix = str(v)


def _set_name(s: Settings, v: Any) -> None:
    s.bot.name = str(v)


def _set_version(s: Settings, v: Any) -> None:
    s.bot.version = str(v)


def _set_admins(s: Settings, v: Any) -> None:
    s.bot.admins = _parse_list(v)


def _set_mode(s: Settings, v: Any) -> None:
    s.bot.mode = str(v).strip().lower()


def _set_rate_limiting(s: Settings, v: Any) -> None:
    s.bot.rate_limiting = _parse_bool("features.rateLimiting", v)


def _set_permission_error(s: Settings, v: Any) -> None:
    s.bot.send_permission_error = _parse_bool("features.sendPermissionError", v)


def _set_blocked(s: Settings, v: Any) -> None:
    s.bot.blocked_users = _parse_list(v)


def _set_log_level(s: Settings, v: Any) -> None:
    s.log.level = str(v).upper()


def _set_backoff_base(s: Settings, v: Any) -> None:
    s.backoff.base_s = _parse_float("backoff.baseSeconds", v)


def _set_backoff_max(s: Settings, v: Any) -> None:
    s.backoff.max_s = _parse_float("backoff.maxSeconds", v)


_DOTTED_KEYS = {
    "mongo.uri": _set_mongo_uri,
    "mongo.dbName": _set_mongo_db,
    "auth.useMongoAuth": _set_use_mongo_auth,
    "auth.dir": _set_auth_dir,
    "auth.debounceSeconds": _set_debounce,
    "bot.owner": _set_owner,
    "bot.prefix": _set_prefix,
    "bot.name": _set_name,
    "bot.version": _set_version,
    "bot.admins": _set_admins,
    "features.mode": _set_mode,
    "features.rateLimiting": _set_rate_limiting,
    "features.sendPermissionError": _set_permission_error,
    "security.blockedUsers": _set_blocked,
    "logging.level": _set_log_level,
    "backoff.baseSeconds": _set_backoff_base,
    "backoff.maxSeconds": _set_backoff_max,
}
