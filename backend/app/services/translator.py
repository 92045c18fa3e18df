from __future__ import annotations

import importlib.util
import json
import logging
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from app.schemas.page import QualityTier, TranslationUnit


DEFAULT_CONFIDENCE = 0.8
RETRYABLE_STATUS = {408, 409, 425, 429}
_HTTP2_AVAILABLE = importlib.util.find_spec("h2") is not None
logger = logging.getLogger(__name__)


class TranslationError(RuntimeError):
    pass


class TransientTranslationError(TranslationError):
    """Timeout, rate limit, 5xx or an unparseable engine reply; worth retrying."""


class TranslationRejected(TranslationError):
    """Authorization or malformed request; retrying cannot help."""


class TranslationFailed(TranslationError):
    """Whole-batch failure. ``retryable`` is set when only the retry budget ran out."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class TierBackend:
    tier: QualityTier
    model: str
    temperature: float
    timeout_sec: int
    latency: str
    relative_cost: float
    accuracy: str


# Trade-off table: fast trades accuracy for latency/cost, premium the reverse.
DEFAULT_TIER_TABLE: Mapping[QualityTier, TierBackend] = {
    "fast": TierBackend("fast", "gpt-3.5-turbo", 0.3, 30, "low", 1.0, "good"),
    "balanced": TierBackend("balanced", "gpt-4o", 0.3, 60, "medium", 5.0, "high"),
    "premium": TierBackend("premium", "gpt-4o", 0.2, 120, "high", 10.0, "highest"),
}


def build_tier_table(fast_model: str, balanced_model: str, premium_model: str) -> dict[QualityTier, TierBackend]:
    models = {"fast": fast_model, "balanced": balanced_model, "premium": premium_model}
    table: dict[QualityTier, TierBackend] = {}
    for tier, backend in DEFAULT_TIER_TABLE.items():
        table[tier] = TierBackend(
            tier=backend.tier,
            model=models[tier] or backend.model,
            temperature=backend.temperature,
            timeout_sec=backend.timeout_sec,
            latency=backend.latency,
            relative_cost=backend.relative_cost,
            accuracy=backend.accuracy,
        )
    return table


def resolve_backend(tier: str, table: Mapping[QualityTier, TierBackend] = DEFAULT_TIER_TABLE) -> TierBackend:
    try:
        return table[tier]  # type: ignore[index]
    except KeyError as exc:
        raise TranslationRejected(f"unknown quality tier: {tier}") from exc


class TranslationEngine(Protocol):
    def translate_batch(
        self,
        texts: list[str],
        source_lang: str,
        target_lang: str,
        backend: TierBackend,
    ) -> list[dict[str, Any] | None]:
        """Return one ``{"translatedText", "confidence", "note"}`` entry per text, in order."""
        ...


def _clamp_confidence(raw: Any) -> float:
    if raw is None:
        return DEFAULT_CONFIDENCE
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if value != value:  # NaN
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, value))


def _to_unit(index: int, item: Any) -> TranslationUnit:
    if isinstance(item, str):
        item = {"translatedText": item}
    if not isinstance(item, dict):
        return TranslationUnit.failed_at(index)

    text = str(item.get("translatedText") or item.get("translation") or "").strip()
    if not text:
        return TranslationUnit.failed_at(index)

    note = item.get("note") or item.get("context")
    return TranslationUnit(
        index=index,
        text=text,
        confidence=_clamp_confidence(item.get("confidence")),
        note=str(note).strip() if note else None,
    )


def align_units(texts: Sequence[str], raw: Sequence[Any]) -> list[TranslationUnit]:
    """Pad (never truncate) engine output to exactly one unit per input text."""
    if len(raw) > len(texts):
        logger.warning("engine returned %s results for %s texts; extras dropped", len(raw), len(texts))
    units = [_to_unit(idx, raw[idx]) if idx < len(raw) else TranslationUnit.failed_at(idx) for idx in range(len(texts))]
    padded = sum(1 for unit in units if unit.failed)
    if padded:
        logger.warning("batch padded with %s translation_failed units (of %s)", padded, len(texts))
    return units


class BatchTranslator:
    def __init__(
        self,
        engine: TranslationEngine,
        tier_table: Mapping[QualityTier, TierBackend] | None = None,
        max_attempts: int = 4,
        backoff_base_ms: int = 500,
        backoff_max_ms: int = 8000,
        backoff_jitter_ms: int = 250,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._tier_table = tier_table or DEFAULT_TIER_TABLE
        self.max_attempts = max(1, int(max_attempts))
        self._wait = wait_exponential(
            multiplier=backoff_base_ms / 1000.0,
            max=backoff_max_ms / 1000.0,
        ) + wait_random(0, max(0, backoff_jitter_ms) / 1000.0)
        self._sleep = sleep

    def translate(
        self,
        texts: Sequence[str],
        source_lang: str,
        target_lang: str,
        quality_tier: str,
    ) -> list[TranslationUnit]:
        texts = list(texts)
        if not texts:
            return []

        try:
            backend = resolve_backend(quality_tier, self._tier_table)
        except TranslationRejected as exc:
            raise TranslationFailed(str(exc)) from exc

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(TransientTranslationError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            raw = retrying(self._call_engine, texts, source_lang, target_lang, backend)
        except TranslationRejected as exc:
            logger.error("translation rejected model=%s count=%s: %s", backend.model, len(texts), exc)
            raise TranslationFailed(str(exc)) from exc
        except TransientTranslationError as exc:
            logger.error("translation failed after %s attempts model=%s: %s", self.max_attempts, backend.model, exc)
            raise TranslationFailed(
                f"retry budget exhausted after {self.max_attempts} attempts: {exc}", retryable=True
            ) from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("translation engine error model=%s", backend.model)
            raise TranslationFailed(f"translation engine failed: {exc}") from exc

        return align_units(texts, raw)

    def _call_engine(
        self,
        texts: list[str],
        source_lang: str,
        target_lang: str,
        backend: TierBackend,
    ) -> list[Any]:
        raw = self._engine.translate_batch(texts, source_lang, target_lang, backend)
        if raw is None:
            return []
        if not isinstance(raw, (list, tuple)):
            raise TransientTranslationError(f"engine returned {type(raw).__name__}, expected a list")
        return list(raw)

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        logger.warning(
            "translation attempt %s/%s failed, retrying in %.2fs: %s",
            state.attempt_number,
            self.max_attempts,
            delay,
            exc,
        )

    @staticmethod
    def failed_batch(count: int) -> list[TranslationUnit]:
        return [TranslationUnit.failed_at(idx) for idx in range(count)]


def build_batch_prompt(texts: list[str], source_lang: str, target_lang: str) -> list[dict[str, str]]:
    expected_size = len(texts)
    system = (
        f"You are a professional manga translator. Translate {expected_size} {source_lang} speech-bubble "
        f"segments from one page into {target_lang}. "
        "Keep character voice, terminology and names consistent across all segments of the page. "
        "Consider speech patterns, casual vs formal register, cultural references and onomatopoeia. "
        "Translate each segment independently: do not merge, split, drop or reorder segments. "
        "Respond with a JSON object of the form "
        '{"translations": [{"index": 1, "translatedText": "...", "confidence": 0.95, "note": "optional cultural note"}]} '
        f"containing exactly {expected_size} items."
    )
    lines = "\n".join(f"{idx}. {json.dumps(text, ensure_ascii=False)}" for idx, text in enumerate(texts, start=1))
    user = f"Segments:\n{lines}"
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def _strip_code_fence(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text.strip()


def _extract_json_candidates(raw: str) -> list[str]:
    text = _strip_code_fence(raw)
    candidates = [text]

    object_match = re.search(r"\{[\s\S]*\}", text)
    if object_match:
        candidates.append(object_match.group(0))

    array_match = re.search(r"\[[\s\S]*\]", text)
    if array_match:
        candidates.append(array_match.group(0))

    dedup: list[str] = []
    for item in candidates:
        if item and item not in dedup:
            dedup.append(item)
    return dedup


def parse_batch_output(raw: str, expected_size: int) -> list[dict[str, Any] | None]:
    parsed: Any = None
    for candidate in _extract_json_candidates(raw):
        try:
            parsed = json.loads(candidate)
            break
        except ValueError:
            continue

    items: list[Any] | None = None
    if isinstance(parsed, dict) and isinstance(parsed.get("translations"), list):
        items = parsed["translations"]
    elif isinstance(parsed, list):
        items = parsed
    if items is None:
        raise TransientTranslationError("batch response parse failed")

    normalized: list[dict[str, Any] | None] = [
        {"translatedText": item} if isinstance(item, str) else item if isinstance(item, dict) else None
        for item in items
    ]

    # Indexed replies may skip segments; place them by index so gaps pad in the right slot.
    indexed = [item for item in normalized if item is not None and isinstance(item.get("index"), int)]
    if indexed and len(indexed) == len(normalized):
        by_index = {item["index"]: item for item in indexed if 1 <= item["index"] <= expected_size}
        if by_index:
            last = max(by_index)
            return [by_index.get(pos) for pos in range(1, last + 1)]
    return normalized


def _format_http_error(resp: httpx.Response) -> str:
    detail = ""
    try:
        data = resp.json()
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict):
                detail = str(err.get("message") or err.get("code") or "")
            if not detail:
                detail = str(data.get("message") or "")
        elif data is not None:
            detail = str(data)
    except ValueError:
        detail = resp.text.strip()

    detail = detail.strip()
    if detail:
        return f"HTTP {resp.status_code}: {detail}"
    return f"HTTP {resp.status_code}"


def _message_content(data: dict[str, Any]) -> Any:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise TransientTranslationError("response has no choices")
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        raise TransientTranslationError("response choice has no message")
    return message.get("content", "")


class ChatCompletionEngine:
    """OpenAI-compatible chat-completions client translating a page in one request."""

    def __init__(self, api_key: str, base_url: str | None = None, client: httpx.Client | None = None) -> None:
        self._api_key = api_key
        self._base_url = (base_url or "https://api.openai.com/v1").rstrip("/")
        self._client = client

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                # HTTP/2 needs the optional h2 package.
                http2=_HTTP2_AVAILABLE,
                limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
            )
        return self._client

    def translate_batch(
        self,
        texts: list[str],
        source_lang: str,
        target_lang: str,
        backend: TierBackend,
    ) -> list[dict[str, Any] | None]:
        if not self._api_key:
            raise TranslationRejected("translation api key is not configured")

        payload = {
            "model": backend.model,
            "messages": build_batch_prompt(texts, source_lang, target_lang),
            "temperature": backend.temperature,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = self._http().post(
                f"{self._base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=backend.timeout_sec,
            )
        except httpx.TimeoutException as exc:
            raise TransientTranslationError(f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientTranslationError(f"transport error: {exc}") from exc

        if resp.status_code in (401, 403):
            raise TranslationRejected(_format_http_error(resp))
        if resp.status_code in RETRYABLE_STATUS or resp.status_code >= 500:
            raise TransientTranslationError(_format_http_error(resp))
        if resp.status_code >= 400:
            raise TranslationRejected(_format_http_error(resp))

        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientTranslationError("response body is not JSON") from exc
        if not isinstance(data, dict):
            raise TransientTranslationError("unexpected response shape")
        content = _message_content(data)
        if isinstance(content, list):
            content = "\n".join(
                item.get("text", "") for item in content if isinstance(item, dict) and item.get("type") == "text"
            )
        if not isinstance(content, str) or not content.strip():
            raise TransientTranslationError("empty translation response")
        return parse_batch_output(content, expected_size=len(texts))

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
