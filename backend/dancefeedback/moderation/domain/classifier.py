"""Language-model classifier for feedback text."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Union

import httpx

from dancefeedback.moderation.domain.errors import ClassifierTimeout, ClassifierUnavailable
from dancefeedback.moderation.domain.models import (
    MAX_VERDICT_REASON_LENGTH,
    VERDICT_LEVELS,
    ModerationLevel,
    ModerationVerdict,
)
from dancefeedback.obs import metrics

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a strict but fair moderator for social dance (bachata) feedback.
Return ONLY valid JSON matching this schema:
{"level":"Green|Yellow|Red", "reason":"string (<=200 chars)", "categories":["optional-tags"]}.
Rules:
- Green: polite/constructive, even if negative.
- Yellow: borderline rude, sarcasm, mild profanity, hygiene remarks stated factually; still show to users.
- Red: direct insults, slurs, harassment, threats, sexual harassment.
Context: Feedback may mention technique, musicality, timing, connection, hygiene (e.g., smell). Allow factual hygiene notes unless insulting."""

FALLBACK_VERDICT = ModerationVerdict(level=ModerationLevel.YELLOW, reason="fallback", categories=())


@dataclass(frozen=True, slots=True)
class ParsedVerdict:
    verdict: ModerationVerdict


@dataclass(frozen=True, slots=True)
class FallbackVerdict:
    raw: str
    verdict: ModerationVerdict = FALLBACK_VERDICT


ExtractionResult = Union[ParsedVerdict, FallbackVerdict]


def extract_verdict(text: str) -> ExtractionResult:
    """Pull a verdict out of free-form model output.

    Only the slice between the first ``{`` and the last ``}`` is parsed so that
    reasoning text around the JSON is tolerated. Anything unusable yields the
    fallback verdict instead of an error.
    """
    raw = text or ""
    start = raw.find("{")
    end = raw.rfind("}")
    if start < 0 or end < start:
        return FallbackVerdict(raw=raw)
    try:
        data = json.loads(raw[start : end + 1])
    except (ValueError, RecursionError):
        return FallbackVerdict(raw=raw)
    if not isinstance(data, Mapping) or data.get("level") is None:
        return FallbackVerdict(raw=raw)
    return ParsedVerdict(
        ModerationVerdict(
            level=normalize_level(data.get("level")),
            reason=_clean_reason(data.get("reason")),
            categories=_clean_categories(data.get("categories")),
        )
    )


def normalize_level(value: Any) -> ModerationLevel:
    """Map a model-supplied level onto Green/Yellow/Red; unknown values become Yellow."""
    text = str(value).strip().lower()
    for level in VERDICT_LEVELS:
        if level.value.lower() == text:
            return level
    return ModerationLevel.YELLOW


def _clean_reason(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:MAX_VERDICT_REASON_LENGTH]


def _clean_categories(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    seen: dict[str, None] = {}
    for item in value:
        if isinstance(item, str) and item.strip():
            seen.setdefault(item.strip(), None)
    return tuple(seen)


class TextClassifier(Protocol):
    async def classify(self, text: str) -> ModerationVerdict:
        ...


@dataclass
class ChatCompletionClassifier(TextClassifier):
    """Classifier backed by an OpenAI-compatible ``/v1/chat/completions`` endpoint."""

    http: httpx.AsyncClient
    base_url: str
    model: str
    temperature: float = 0.0
    max_tokens: int = 512
    timeout: float = 30.0

    async def classify(self, text: str) -> ModerationVerdict:
        content = await self._complete(text)
        result = extract_verdict(content)
        if isinstance(result, FallbackVerdict):
            metrics.MOD_CLASSIFIER_FALLBACKS_TOTAL.inc()
            logger.warning("classifier returned no usable verdict", extra={"raw_output": result.raw[:200]})
        return result.verdict

    def build_request(self, text: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f'Analyze this feedback and respond with JSON only:\n"""{text}"""'},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": False,
        }

    async def _complete(self, text: str) -> str:
        url = f"{self.base_url.rstrip('/')}/v1/chat/completions"
        start = time.perf_counter()
        try:
            response = await self.http.post(url, json=self.build_request(text), timeout=self.timeout)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ClassifierTimeout(f"classifier request timed out after {self.timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            raise ClassifierUnavailable(f"classifier returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ClassifierUnavailable(f"classifier request failed: {exc}") from exc
        finally:
            metrics.MOD_CLASSIFIER_LATENCY_SECONDS.observe(time.perf_counter() - start)
        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            # an unexpected envelope is treated like unparseable model text
            return ""
        return content if isinstance(content, str) else ""
