"""Settings for streamarchive, sourced from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_CHUNK_SIZE = 128 * 1024  # 128 KB
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 300.0
DEFAULT_CONNECT_ATTEMPTS = 5
DEFAULT_USER_AGENT = "aria2/1.36.0"
DEFAULT_COMPRESSLEVEL = 9


def env_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Typed settings used by the transport and the codecs."""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    connect_attempts: int = DEFAULT_CONNECT_ATTEMPTS
    user_agent: str = DEFAULT_USER_AGENT
    compresslevel: int = DEFAULT_COMPRESSLEVEL

    @classmethod
    def from_env(cls) -> "Settings":
        chunk_size = env_int("STREAMARCHIVE_CHUNK_SIZE", DEFAULT_CHUNK_SIZE)
        attempts = env_int("STREAMARCHIVE_CONNECT_ATTEMPTS", DEFAULT_CONNECT_ATTEMPTS)
        level = env_int("STREAMARCHIVE_COMPRESSLEVEL", DEFAULT_COMPRESSLEVEL)
        return cls(
            chunk_size=chunk_size if chunk_size > 0 else DEFAULT_CHUNK_SIZE,
            connect_timeout=env_float("STREAMARCHIVE_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT),
            read_timeout=env_float("STREAMARCHIVE_READ_TIMEOUT", DEFAULT_READ_TIMEOUT),
            connect_attempts=attempts if attempts > 0 else DEFAULT_CONNECT_ATTEMPTS,
            user_agent=os.environ.get("STREAMARCHIVE_USER_AGENT") or DEFAULT_USER_AGENT,
            compresslevel=level if 0 <= level <= 9 else DEFAULT_COMPRESSLEVEL,
        )
