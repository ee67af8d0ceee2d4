from __future__ import annotations

import os
from dataclasses import dataclass

ENV_PREFIX = "CLUSTEROPS_"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


@dataclass
class StorageConfig:
    retry_interval: float = 1.0
    retry_timeout: float = 10.0
    max_page_size: int = 100

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.retry_interval <= 0:
            raise ValueError("retry_interval must be > 0")
        if self.retry_timeout < self.retry_interval:
            raise ValueError("retry_timeout must be >= retry_interval")
        if self.max_page_size < 1:
            raise ValueError("max_page_size must be >= 1")

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "StorageConfig":
        return cls(
            retry_interval=_env_float(f"{prefix}STORAGE_RETRY_INTERVAL", cls.retry_interval),
            retry_timeout=_env_float(f"{prefix}STORAGE_RETRY_TIMEOUT", cls.retry_timeout),
            max_page_size=_env_int(f"{prefix}MAX_PAGE_SIZE", cls.max_page_size),
        )


@dataclass
class ManagerConfig:
    operation_timeout: float = 24 * 60 * 60.0
    retry_backoff: float = 10.0

    def __post_init__(self) -> None:
        if self.operation_timeout <= 0:
            raise ValueError("operation_timeout must be > 0")
        if self.retry_backoff <= 0:
            raise ValueError("retry_backoff must be > 0")

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "ManagerConfig":
        return cls(
            operation_timeout=_env_float(f"{prefix}OPERATION_TIMEOUT", cls.operation_timeout),
            retry_backoff=_env_float(f"{prefix}RETRY_BACKOFF", cls.retry_backoff),
        )


@dataclass
class QueueConfig:
    name: str
    workers: int = 5

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("queue name cannot be empty")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")

    @classmethod
    def from_env(cls, name: str, prefix: str = ENV_PREFIX) -> "QueueConfig":
        key = name.upper().replace("-", "_")
        return cls(name=name, workers=_env_int(f"{prefix}{key}_WORKERS", cls.workers))


@dataclass
class EventStreamConfig:
    stream_key: str
    maxlen: int = 10_000

    def __post_init__(self) -> None:
        if not self.stream_key:
            raise ValueError("stream_key cannot be empty")
        if self.maxlen < 1:
            raise ValueError("maxlen must be >= 1; Redis would otherwise trim every entry")

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "EventStreamConfig":
        return cls(
            stream_key=os.environ.get(f"{prefix}EVENT_STREAM", "clusterops:events"),
            maxlen=_env_int(f"{prefix}EVENT_STREAM_MAXLEN", cls.maxlen),
        )
