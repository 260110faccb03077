"""Provider adapters for streaming chat completions.

Every adapter exposes the same ``generate`` call: it sends one HTTP request,
decodes the server-sent-event body line by line and yields
:class:`StreamChunk` objects, always ending with a ``done`` chunk. Adding a
provider means adding one adapter class and one resolver entry in
``PROVIDER_RESOLVERS``; callers never branch on provider names.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote

import requests

from .config import GenerationSettings, SamplingParams
from .errors import ConfigurationError, GenerationCancelled, ProviderError

logger = logging.getLogger(__name__)

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:streamGenerateContent"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com"
DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"


class CancellationToken:
    """Cooperative cancellation flag shared between the caller and an adapter.

    ``cancel`` may be called from any thread. Registered callbacks run once,
    which lets an adapter close its open HTTP response so a blocked read
    returns promptly.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.debug("Cancellation callback failed", exc_info=True)

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled("Generation cancelled by caller")


@dataclass(frozen=True)
class StreamChunk:
    kind: str
    text: str = ""

    @property
    def is_done(self) -> bool:
        return self.kind == "done"

    @classmethod
    def token(cls, text: str) -> "StreamChunk":
        return cls("token", text)

    @classmethod
    def done(cls) -> "StreamChunk":
        return cls("done")


class ProviderAdapter(ABC):
    """Streams a chat completion from one provider kind."""

    name = "provider"

    def __init__(self, api_key: str, *, request_timeout: int = 60) -> None:
        self.api_key = api_key
        self.request_timeout = request_timeout

    @abstractmethod
    def build_request(
        self, messages: List[Dict[str, str]], model: str, sampling: SamplingParams
    ) -> Tuple[str, Dict[str, str], Dict[str, str], Dict[str, Any]]:
        """Return ``(url, headers, query params, json body)`` for one streaming call."""

    @abstractmethod
    def extract_text(self, payload: Dict[str, Any]) -> str:
        """Pull the text fragment out of one decoded event payload."""

    def is_end_of_stream(self, data: str) -> bool:
        return False

    def generate(
        self,
        messages: List[Dict[str, str]],
        model: str,
        sampling: SamplingParams,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[StreamChunk]:
        """Yield token chunks as they arrive, then a single ``done`` chunk."""
        token = cancel_token or CancellationToken()
        token.raise_if_cancelled()
        url, headers, params, body = self.build_request(messages, model, sampling)

        logger.info("Streaming %s completion using model %s", self.name, model)
        try:
            response = requests.post(
                url,
                json=body,
                headers=headers,
                params=params or None,
                stream=True,
                timeout=self.request_timeout,
            )
        except requests.RequestException as exc:
            if token.cancelled:
                raise GenerationCancelled("Generation cancelled by caller") from exc
            raise ProviderError(self.name, 0, str(exc)) from exc

        token.add_callback(response.close)
        try:
            if not response.ok or response.raw is None:
                raise ProviderError(self.name, response.status_code, response.text)

            for data in self._iter_event_data(response, token):
                if self.is_end_of_stream(data):
                    break
                try:
                    payload = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON stream line: %s", data)
                    continue
                if not isinstance(payload, dict):
                    continue
                text = self.extract_text(payload)
                if text:
                    yield StreamChunk.token(text)
            token.raise_if_cancelled()
            yield StreamChunk.done()
        finally:
            token.remove_callback(response.close)
            response.close()

    def _iter_event_data(self, response: requests.Response, token: CancellationToken) -> Iterator[str]:
        lines = response.iter_lines()
        while True:
            token.raise_if_cancelled()
            try:
                raw_line = next(lines)
            except StopIteration:
                return
            except Exception as exc:
                if token.cancelled:
                    raise GenerationCancelled("Generation cancelled by caller") from exc
                raise ProviderError(self.name, 0, f"stream interrupted: {exc}") from exc

            if not raw_line:
                continue
            line = raw_line.decode("utf-8", errors="replace") if isinstance(raw_line, bytes) else raw_line
            line = line.rstrip()
            if not line.startswith("data:"):
                continue
            data = line[5:].strip()
            if data:
                yield data


class OpenAICompatibleAdapter(ProviderAdapter):
    """Chat-completions schema with an in-band system role."""

    name = "openai"

    def __init__(self, api_key: str, base_url: str = DEFAULT_OPENAI_BASE_URL, *, request_timeout: int = 60) -> None:
        super().__init__(api_key, request_timeout=request_timeout)
        self.base_url = base_url or DEFAULT_OPENAI_BASE_URL

    def build_request(self, messages, model, sampling):
        body: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "temperature": sampling.temperature,
            "max_tokens": sampling.max_tokens,
            "top_p": sampling.top_p,
            "presence_penalty": sampling.presence_penalty,
            "frequency_penalty": sampling.frequency_penalty,
            "stream": True,
        }
        if sampling.stop:
            body["stop"] = list(sampling.stop)
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        return f"{self.base_url.rstrip('/')}/v1/chat/completions", headers, {}, body

    def is_end_of_stream(self, data: str) -> bool:
        return data == "[DONE]"

    def extract_text(self, payload):
        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""


class GeminiAdapter(ProviderAdapter):
    """Gemini ``streamGenerateContent``: system text travels outside the turn list."""

    name = "gemini"

    def build_request(self, messages, model, sampling):
        body: Dict[str, Any] = to_gemini_payload(messages)
        body["generationConfig"] = {
            "temperature": sampling.temperature,
            "maxOutputTokens": sampling.max_tokens,
            "topP": sampling.top_p,
            "topK": sampling.top_k,
        }
        model_name = model[len("models/"):] if model.startswith("models/") else model
        url = GEMINI_ENDPOINT.format(model=quote(model_name, safe=""))
        return url, {"Content-Type": "application/json"}, {"alt": "sse", "key": self.api_key}, body

    def extract_text(self, payload):
        try:
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return ""
        return text if isinstance(text, str) else ""


def to_gemini_payload(messages: List[Dict[str, str]]) -> Dict[str, Any]:
    """Collapse system messages into ``systemInstruction`` and rename assistant turns to ``model``."""
    system_text = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    contents = [
        {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
        for m in messages
        if m["role"] != "system"
    ]
    payload: Dict[str, Any] = {"contents": contents}
    if system_text:
        payload["systemInstruction"] = {"parts": [{"text": system_text}]}
    return payload


@dataclass
class ProviderSelection:
    adapter: ProviderAdapter
    provider_name: str
    model_name: str


def _provider_config(settings: GenerationSettings, name: str) -> Dict[str, Any]:
    config = settings.provider_configs.get(name, {})
    if config is None:
        raise ConfigurationError(f"Provider config for '{name}' is not a JSON object")
    return config


def _require_key(config: Dict[str, Any], label: str) -> str:
    api_key = config.get("apiKey")
    if not isinstance(api_key, str) or not api_key.strip():
        raise ConfigurationError(f"{label} API key is not configured")
    return api_key


def _resolve_openai(settings: GenerationSettings) -> ProviderSelection:
    config = _provider_config(settings, "openai")
    api_key = _require_key(config, "OpenAI-compatible")
    adapter = OpenAICompatibleAdapter(
        api_key,
        base_url=config.get("baseUrl") or DEFAULT_OPENAI_BASE_URL,
        request_timeout=settings.request_timeout,
    )
    return ProviderSelection(adapter, "openai", settings.active_model)


def _resolve_gemini(settings: GenerationSettings) -> ProviderSelection:
    config = _provider_config(settings, "gemini")
    api_key = _require_key(config, "Gemini")
    active = settings.active_model or ""
    normalized = active[len("models/"):] if active.startswith("models/") else active
    model = normalized if normalized.startswith("gemini") else config.get("model") or DEFAULT_GEMINI_MODEL
    return ProviderSelection(GeminiAdapter(api_key, request_timeout=settings.request_timeout), "gemini", model)


PROVIDER_RESOLVERS: Dict[str, Callable[[GenerationSettings], ProviderSelection]] = {
    "openai": _resolve_openai,
    "gemini": _resolve_gemini,
}


def resolve_active_provider(settings: GenerationSettings) -> ProviderSelection:
    """Pick the adapter and model named by ``settings``; raise :class:`ConfigurationError` if unusable."""
    resolver = PROVIDER_RESOLVERS.get(settings.active_provider)
    if resolver is None:
        raise ConfigurationError(f"Unknown provider '{settings.active_provider}'")
    selection = resolver(settings)
    logger.info("Resolved provider %s with model %s", selection.provider_name, selection.model_name)
    return selection
