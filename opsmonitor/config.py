"""Application configuration loaded from a YAML file."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_CONFIG_FILE = "config/config.yaml"

# Name of the configuration key that carries a connection's login secret.
_LOGIN_FIELD = "pass"


@dataclass
class AlarmConfig:
    """Timing knobs for alert grouping and recovery, in ticks and minutes."""

    group_wait: int = 0
    group_interval: int = 0
    recover_wait: int = 0


@dataclass
class ServerConfig:
    mode: str = ""
    port: str = ""
    enable_pprof: bool = False
    alarm_config: AlarmConfig = field(default_factory=AlarmConfig)


@dataclass
class MySQLConfig:
    host: str = ""
    port: str = ""
    user: str = ""
    password: str = ""
    db_name: str = ""
    timeout: str = ""


@dataclass
class RedisConfig:
    host: str = ""
    port: str = ""
    password: str = ""


@dataclass
class JwtConfig:
    expire: int = 0


@dataclass
class JaegerConfig:
    url: str = ""


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    mysql: MySQLConfig = field(default_factory=MySQLConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    jwt: JwtConfig = field(default_factory=JwtConfig)
    jaeger: JaegerConfig = field(default_factory=JaegerConfig)


def _section(data: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        return {}
    lowered = name.lower()
    for key, value in data.items():
        if str(key).lower() == lowered:
            if value is None:
                return {}
            if not isinstance(value, Mapping):
                raise ValueError(f"section {name!r} must be a mapping")
            return value
    return {}


def _value(data: Mapping[str, Any], name: str, default: Any) -> Any:
    lowered = name.lower()
    for key, value in data.items():
        if str(key).lower() == lowered:
            return default if value is None else value
    return default


def _str(data: Mapping[str, Any], name: str) -> str:
    return str(_value(data, name, ""))


def _int(data: Mapping[str, Any], name: str) -> int:
    raw = _value(data, name, 0)
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name!r} must be an integer, got {raw!r}") from exc


def _bool(data: Mapping[str, Any], name: str) -> bool:
    raw = _value(data, name, False)
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    return bool(raw)


def parse_config(data: Mapping[str, Any]) -> AppConfig:
    """Build an AppConfig from a mapping; keys match case-insensitively."""
    server = _section(data, "Server")
    alarm = _section(server, "AlarmConfig")
    mysql = _section(data, "MySQL")
    redis = _section(data, "Redis")
    jwt = _section(data, "Jwt")
    jaeger = _section(data, "Jaeger")
    return AppConfig(
        server=ServerConfig(
            mode=_str(server, "mode"),
            port=_str(server, "port"),
            enable_pprof=_bool(server, "enablePprof"),
            alarm_config=AlarmConfig(
                group_wait=_int(alarm, "groupWait"),
                group_interval=_int(alarm, "groupInterval"),
                recover_wait=_int(alarm, "recoverWait"),
            ),
        ),
        mysql=MySQLConfig(
            host=_str(mysql, "host"),
            port=_str(mysql, "port"),
            user=_str(mysql, "user"),
            password=_str(mysql, _LOGIN_FIELD),
            db_name=_str(mysql, "dbName"),
            timeout=_str(mysql, "timeout"),
        ),
        redis=RedisConfig(
            host=_str(redis, "host"),
            port=_str(redis, "port"),
            password=_str(redis, _LOGIN_FIELD),
        ),
        jwt=JwtConfig(expire=_int(jwt, "expire")),
        jaeger=JaegerConfig(url=_str(jaeger, "url")),
    )


def load_config(path: str | Path = DEFAULT_CONFIG_FILE) -> AppConfig:
    """Read and parse a YAML configuration file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ValueError(f"cannot read configuration {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"cannot parse configuration {path}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ValueError("configuration root must be a mapping")
    return parse_config(data)