from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Tuple


@dataclass(frozen=True)
class Settings:
    """
    Application settings loaded from environment variables.

    Env vars:
    - PERSISTENCE_BACKEND: 'memory' (default) or 'sqlite'
    - SQLITE_DB_PATH: path to sqlite db file. Default './data/planboard.db'
    - CORS_ALLOW_ORIGINS: comma-separated list of allowed origins; '*' by default
    - LOG_LEVEL: root log level name (default: INFO)
    - DEFAULT_BOARD_COLUMNS: comma-separated 'key:Name' pairs used for new boards
    """

    persistence_backend: str
    sqlite_db_path: str
    cors_allow_origins: List[str]
    log_level: str
    default_board_columns: Tuple[Tuple[str, str], ...]


_DEFAULT_COLUMNS = "todo:To Do,inprogress:In Progress,done:Done"
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name, default)
    if value is None or value == "":
        return default
    return value


def _parse_origins(origins_value: str) -> List[str]:
    """
    Parse CORS origins from env. Supports:
    - '*' to allow all origins
    - Comma-separated list of origins
    """
    value = origins_value.strip()
    if value == "*":
        return ["*"]
    return [o.strip() for o in value.split(",") if o.strip()]


def _parse_columns(columns_value: str) -> Tuple[Tuple[str, str], ...]:
    """
    Parse 'key:Name' pairs. A pair without a name uses the key as its name;
    malformed input falls back to the built-in todo/inprogress/done columns.
    """
    columns = []
    for chunk in columns_value.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        key, _, name = chunk.partition(":")
        key = key.strip()
        if not key:
            continue
        columns.append((key, name.strip() or key))
    if not columns:
        return _parse_columns(_DEFAULT_COLUMNS)
    return tuple(columns)


# PUBLIC_INTERFACE
def get_settings() -> Settings:
    """Return application settings loaded from environment variables."""
    backend = _get_env("PERSISTENCE_BACKEND", "memory").strip().lower()
    if backend not in {"memory", "sqlite"}:
        # Fallback to memory if unsupported
        backend = "memory"

    sqlite_path = _get_env("SQLITE_DB_PATH", "./data/planboard.db").strip()
    origins = _parse_origins(_get_env("CORS_ALLOW_ORIGINS", "*"))

    log_level = _get_env("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        log_level = "INFO"

    return Settings(
        persistence_backend=backend,
        sqlite_db_path=sqlite_path,
        cors_allow_origins=origins,
        log_level=log_level,
        default_board_columns=_parse_columns(_get_env("DEFAULT_BOARD_COLUMNS", _DEFAULT_COLUMNS)),
    )
