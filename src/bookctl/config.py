from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import platformdirs
import tomllib
import tomli_w

from bookctl.connection import DEFAULT_SERVER_TIMEOUT_MS

APP_NAME = "bookctl"
URI_ENV_VAR = "BOOKCTL_MONGO_URI"
DEFAULT_MONGO_URI = "mongodb://localhost:27017"
DEFAULT_DATABASE = "plp_bookstore"
DEFAULT_COLLECTION = "books"
DEFAULT_PAGE_SIZE = 5

_MONGO_SCHEMES = {"mongodb", "mongodb+srv"}


class ConfigError(ValueError):
    """Raised when config values are invalid."""


@dataclass(slots=True)
class AppConfig:
    mongo_uri: str | None = None
    database: str = DEFAULT_DATABASE
    collection: str = DEFAULT_COLLECTION
    page_size: int = DEFAULT_PAGE_SIZE
    server_timeout_ms: int = DEFAULT_SERVER_TIMEOUT_MS

    def namespace(self) -> str:
        return f"{self.database}.{self.collection}"


def config_dir() -> Path:
    return Path(platformdirs.user_config_dir(APP_NAME))


def config_path() -> Path:
    return config_dir() / "config.toml"


def validate_mongo_uri(uri: str) -> str:
    normalized = uri.strip()
    parsed = urlparse(normalized)
    host = parsed.netloc.rsplit("@", 1)[-1]
    if parsed.scheme not in _MONGO_SCHEMES or not host:
        raise ConfigError("Invalid MongoDB URI: expected mongodb:// or mongodb+srv:// with a host.")
    return normalized


def validate_name(value: str, *, key: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ConfigError(f"Config key '{key}' must not be empty.")
    forbidden = "/\\. \"$\0" if key == "database" else "$\0"
    if any(ch in normalized for ch in forbidden):
        raise ConfigError(f"Config key '{key}' contains characters MongoDB does not allow: {value!r}")
    return normalized


def _read_raw_config() -> dict[str, Any]:
    path = config_path()
    if not path.exists():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse config file at {path}: {exc}") from exc


def _positive_int(raw: dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ConfigError(f"Config key '{key}' must be a positive integer.")
    return value


def load_config() -> AppConfig:
    raw = _read_raw_config()
    mongo_uri = raw.get("mongo_uri")
    database = raw.get("database", DEFAULT_DATABASE)
    collection = raw.get("collection", DEFAULT_COLLECTION)

    if mongo_uri is not None:
        if not isinstance(mongo_uri, str):
            raise ConfigError("Config key 'mongo_uri' must be a string.")
        mongo_uri = validate_mongo_uri(mongo_uri)

    if not isinstance(database, str):
        raise ConfigError("Config key 'database' must be a string.")
    if not isinstance(collection, str):
        raise ConfigError("Config key 'collection' must be a string.")

    return AppConfig(
        mongo_uri=mongo_uri,
        database=validate_name(database, key="database"),
        collection=validate_name(collection, key="collection"),
        page_size=_positive_int(raw, "page_size", DEFAULT_PAGE_SIZE),
        server_timeout_ms=_positive_int(raw, "server_timeout_ms", DEFAULT_SERVER_TIMEOUT_MS),
    )


def save_config(config: AppConfig) -> None:
    config_dir().mkdir(parents=True, exist_ok=True)
    payload: dict[str, Any] = {
        "database": config.database,
        "collection": config.collection,
        "page_size": config.page_size,
        "server_timeout_ms": config.server_timeout_ms,
    }
    if config.mongo_uri is not None:
        payload["mongo_uri"] = config.mongo_uri
    config_path().write_text(tomli_w.dumps(payload), encoding="utf-8")


def set_mongo_uri(uri: str) -> AppConfig:
    cfg = load_config()
    cfg.mongo_uri = validate_mongo_uri(uri)
    save_config(cfg)
    return cfg


def set_namespace(database: str, collection: str) -> AppConfig:
    cfg = load_config()
    cfg.database = validate_name(database, key="database")
    cfg.collection = validate_name(collection, key="collection")
    save_config(cfg)
    return cfg


def set_page_size(size: int) -> AppConfig:
    if size <= 0:
        raise ConfigError("Page size must be a positive integer.")
    cfg = load_config()
    cfg.page_size = size
    save_config(cfg)
    return cfg


def resolve_mongo_uri(uri_override: str | None, cfg: AppConfig) -> str:
    if uri_override:
        return validate_mongo_uri(uri_override)
    from_env = os.getenv(URI_ENV_VAR)
    if from_env:
        return validate_mongo_uri(from_env)
    if cfg.mongo_uri:
        return cfg.mongo_uri
    return DEFAULT_MONGO_URI
