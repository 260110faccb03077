"""Configuration objects for the character chat service."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .stores import SettingsStore

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, str] = {
    "active_provider": "openai",
    "active_model": "gpt-3.5-turbo",
    "temperature": "0.7",
    "max_tokens": "512",
    "context_limit": "40",
    "memory_limit": "8",
    "lorebook_limit": "6",
    "global_system_prefix": "",
    "top_p": "1",
    "top_k": "40",
    "presence_penalty": "0",
    "frequency_penalty": "0",
    "stop_sequences": "",
    "provider_config_openai": json.dumps({"baseUrl": "https://api.openai.com", "apiKey": ""}),
    "provider_config_gemini": json.dumps({"apiKey": "", "model": "gemini-1.5-flash"}),
}

CONTEXT_LIMIT_RANGE = (10, 200)
RETRIEVAL_LIMIT_RANGE = (0, 50)


@dataclass
class ServerConfig:
    """Process level settings supplied on the command line."""

    host: str = "0.0.0.0"
    port: int = 4000
    database_path: str = "./character_chat.db"
    log_dir: Optional[str] = None
    request_timeout: int = 60


@dataclass
class SamplingParams:
    """Sampling knobs forwarded to the provider (unsupported ones are dropped per provider)."""

    temperature: float = 0.7
    max_tokens: int = 512
    top_p: float = 1.0
    top_k: int = 40
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    stop: List[str] = field(default_factory=list)


@dataclass
class GenerationSettings:
    """Snapshot of the administrative settings for a single request."""

    active_provider: str = "openai"
    active_model: str = "gpt-3.5-turbo"
    sampling: SamplingParams = field(default_factory=SamplingParams)
    context_limit: int = 40
    memory_limit: int = 8
    lorebook_limit: int = 6
    global_system_prefix: str = ""
    provider_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    request_timeout: int = 60

    @classmethod
    def from_store(cls, store: "SettingsStore", *, request_timeout: int = 60) -> "GenerationSettings":
        """Read every key fresh from ``store`` and clamp the window limits."""

        def raw(key: str) -> str:
            value = store.get(key)
            return value if value else DEFAULT_SETTINGS.get(key, "")

        stop_raw = store.get("stop_sequences") or ""
        return cls(
            active_provider=raw("active_provider"),
            active_model=raw("active_model"),
            sampling=SamplingParams(
                temperature=_number(raw("temperature"), 0.7),
                max_tokens=int(_number(raw("max_tokens"), 512)),
                top_p=_number(raw("top_p"), 1.0),
                top_k=int(_number(raw("top_k"), 40)),
                presence_penalty=_number(raw("presence_penalty"), 0.0),
                frequency_penalty=_number(raw("frequency_penalty"), 0.0),
                stop=[part.strip() for part in stop_raw.split(",") if part.strip()],
            ),
            context_limit=_clamp(int(_number(raw("context_limit"), 40)), *CONTEXT_LIMIT_RANGE),
            memory_limit=_clamp(int(_number(raw("memory_limit"), 8)), *RETRIEVAL_LIMIT_RANGE),
            lorebook_limit=_clamp(int(_number(raw("lorebook_limit"), 6)), *RETRIEVAL_LIMIT_RANGE),
            global_system_prefix=store.get("global_system_prefix") or "",
            provider_configs={
                "openai": _json_object(store.get("provider_config_openai")),
                "gemini": _json_object(store.get("provider_config_gemini")),
            },
            request_timeout=request_timeout,
        )


def _number(value: str, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = math.nan
    if not math.isfinite(number):
        logger.debug("Ignoring non-numeric setting value %r", value)
        return default
    return number


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _json_object(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a provider config; ``None`` marks a value that is not a JSON object."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
