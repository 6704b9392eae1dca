from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class StoreConfig:
    page_size: int = 20
    max_messages: int = 0
    local_id_prefix: str = "local-"

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError("page_size must be positive")
        if self.max_messages < 0:
            raise ValueError("max_messages must be non-negative")

    @property
    def retention_enabled(self) -> bool:
        return self.max_messages > 0


def _env_int(name: str, default: int, *, minimum: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}")
    return value


def load_store_config_from_env() -> StoreConfig:
    page_size = _env_int("CHAT_STATE_PAGE_SIZE", StoreConfig.page_size, minimum=1)
    max_messages = _env_int("CHAT_STATE_MAX_MESSAGES", StoreConfig.max_messages, minimum=0)
    prefix = os.environ.get("CHAT_STATE_LOCAL_ID_PREFIX") or StoreConfig.local_id_prefix
    return StoreConfig(page_size=page_size, max_messages=max_messages, local_id_prefix=prefix)
