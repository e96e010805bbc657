"""
Admission checks and payload clamps for AI requests.

``PayloadGuard.evaluate`` runs, in order and short-circuiting: the user text
length check, the in-flight material processing check, the per-identity lock,
and the sliding-window quota. A passing decision carries the lock release that
the caller must await on every exit path, plus two pure clamp functions that
bound retrieval and context fields before the payload goes upstream.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.logging import get_logger
from service_gateway.app.coordination import Coordinator, LockHandle


CONTEXT_START = "MATERIALS_CONTEXT:"
CONTEXT_END = "END_MATERIALS_CONTEXT"
STUDENT_QUESTION_MARKER = "STUDENT_QUESTION:"

PROCESSING_FLAGS = (
    "materialsProcessing",
    "isProcessing",
    "processingMaterials",
    "pendingEmbeddings",
    "pendingChunks",
    "pendingExtraction",
    "pdfExtractionInProgress",
    "chunkingInProgress",
    "embeddingInProgress",
)
PROCESSING_STATUS_FIELDS = ("materialStatus", "processingStatus", "status")
PROCESSING_STATUS_PATTERN = re.compile(r"processing|extracting|chunking|embedding", re.IGNORECASE)

TOP_K_FIELDS = ("topK", "top_k")
CONTEXT_FIELDS = ("context", "appendedContext", "materialsContext")

MESSAGE_TOO_LONG = "Message too long."
MATERIALS_PROCESSING = "Materials still processing."
REQUEST_IN_PROGRESS = "Another AI request is in progress."
RATE_LIMIT_EXCEEDED = "Rate limit exceeded."


def truncate_text(text: Any, max_chars: int) -> str:
    raw = text if isinstance(text, str) else str(text or "")
    return raw if len(raw) <= max_chars else raw[:max_chars]


def clamp_top_k(value: Any, max_top_k: int = 8) -> int:
    """Bound a retrieval count to ``[1, max_top_k]``; unusable input means the maximum."""
    if isinstance(value, bool):
        return max_top_k
    try:
        n = float(value)
    except (TypeError, ValueError):
        return max_top_k
    if not math.isfinite(n) or n <= 0:
        return max_top_k
    return min(max_top_k, max(1, math.floor(n)))


def clamp_context(text: Any, max_chars: int = 20_000) -> str:
    """Truncate the sentinel-delimited materials block, leaving the rest intact.

    Text without a complete sentinel pair is truncated as a whole.
    """
    raw = text if isinstance(text, str) else str(text or "")
    start = raw.find(CONTEXT_START)
    if start == -1:
        return truncate_text(raw, max_chars)

    context_start = start + len(CONTEXT_START)
    end = raw.find(CONTEXT_END, context_start)
    if end == -1:
        return truncate_text(raw, max_chars)

    return raw[:context_start] + truncate_text(raw[context_start:end], max_chars) + raw[end:]


def extract_student_question(content: Any) -> str:
    raw = content if isinstance(content, str) else str(content or "")
    marker = raw.rfind(STUDENT_QUESTION_MARKER)
    if marker == -1:
        return raw
    return raw[marker + len(STUDENT_QUESTION_MARKER):].strip()


def user_content_texts(content: Any) -> List[str]:
    """User-authored text in a chat message's content, in any supported shape."""
    if isinstance(content, str):
        return [extract_student_question(content)]

    if isinstance(content, list):
        texts = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if isinstance(part.get("text"), str):
                texts.append(extract_student_question(part["text"]))
            elif isinstance(part.get("content"), str):
                texts.append(extract_student_question(part["content"]))
        return texts

    if isinstance(content, dict) and isinstance(content.get("text"), str):
        return [extract_student_question(content["text"])]

    return []


def user_texts(body: Dict[str, Any]) -> List[str]:
    texts: List[str] = []
    for name in ("message", "input"):
        if isinstance(body.get(name), str):
            texts.append(body[name])

    messages = body.get("messages")
    if isinstance(messages, list):
        for message in messages:
            if isinstance(message, dict) and message.get("role") == "user":
                texts.extend(user_content_texts(message.get("content")))
    return texts


def latest_user_text(body: Dict[str, Any]) -> str:
    """The question the caller is asking now: last user message, else the flat field."""
    messages = body.get("messages")
    if isinstance(messages, list):
        for message in reversed(messages):
            if isinstance(message, dict) and message.get("role") == "user":
                texts = user_content_texts(message.get("content"))
                if texts:
                    return " ".join(texts)
    for name in ("message", "input"):
        if isinstance(body.get(name), str):
            return extract_student_question(body[name])
    return ""


def is_user_message_too_long(body: Dict[str, Any], max_chars: int) -> bool:
    return any(len(text) > max_chars for text in user_texts(body))


def has_processing_signal(body: Dict[str, Any]) -> bool:
    if any(body.get(flag) is True for flag in PROCESSING_FLAGS):
        return True
    for name in PROCESSING_STATUS_FIELDS:
        value = body.get(name)
        if isinstance(value, str) and PROCESSING_STATUS_PATTERN.search(value):
            return True
    return False


async def _noop_release() -> None:
    return None


@dataclass
class GuardDecision:
    """Outcome of ``PayloadGuard.evaluate``."""

    ok: bool
    status: int
    message: str
    identity_key: str
    clamp_top_k: Callable[[Any], int]
    clamp_context: Callable[[Any], str]
    release: Callable[[], Awaitable[None]] = field(default=_noop_release)


class PayloadGuard:
    """Fast admission checks in front of the upstream call."""

    def __init__(
        self,
        coordinator: Coordinator,
        *,
        max_user_message_chars: int = 4000,
        max_top_k: int = 8,
        max_context_chars: int = 20_000,
    ):
        self.coordinator = coordinator
        self.max_user_message_chars = max_user_message_chars
        self.clamp_top_k = partial(clamp_top_k, max_top_k=max_top_k)
        self.clamp_context = partial(clamp_context, max_chars=max_context_chars)
        self.logger = get_logger("gateway.payload_guard")

    def _decision(self, ok: bool, status: int, message: str, identity_key: str,
                  lock: Optional[LockHandle] = None) -> GuardDecision:
        return GuardDecision(
            ok=ok,
            status=status,
            message=message,
            identity_key=identity_key,
            clamp_top_k=self.clamp_top_k,
            clamp_context=self.clamp_context,
            release=lock.release if lock is not None else _noop_release,
        )

    async def evaluate(self, body: Dict[str, Any], identity_key: str, route: str = "unknown") -> GuardDecision:
        if is_user_message_too_long(body, self.max_user_message_chars):
            return self._decision(False, 400, MESSAGE_TOO_LONG, identity_key)

        if has_processing_signal(body):
            return self._decision(False, 409, MATERIALS_PROCESSING, identity_key)

        # In degraded (in-process) mode this only excludes requests handled by
        # this process; other replicas can admit the same key concurrently.
        lock = await self.coordinator.acquire(identity_key, route=route)
        if not lock.ok:
            self.logger.info("AI request rejected, lock held", route=route, identity_key=identity_key)
            return self._decision(False, 429, REQUEST_IN_PROGRESS, identity_key)

        try:
            rate = await self.coordinator.check_and_record(identity_key, route=route)
        except BaseException:
            await lock.release()
            raise

        if not rate.ok:
            await lock.release()
            self.logger.info(
                "AI request rejected, rate limit exceeded",
                route=route,
                identity_key=identity_key,
                count=rate.count,
                limit=rate.limit,
            )
            return self._decision(False, 429, RATE_LIMIT_EXCEEDED, identity_key)

        return self._decision(True, 200, "OK", identity_key, lock=lock)


def _clamp_message_content(content: Any, decision: GuardDecision) -> Any:
    if isinstance(content, str):
        return decision.clamp_context(content)
    if isinstance(content, list):
        clamped = []
        for part in content:
            if isinstance(part, dict):
                part = dict(part)
                for name in ("text", "content"):
                    if isinstance(part.get(name), str):
                        part[name] = decision.clamp_context(part[name])
            clamped.append(part)
        return clamped
    return content


def clamp_payload(body: Dict[str, Any], decision: GuardDecision) -> Dict[str, Any]:
    """Return a copy of ``body`` with every known model-context field bounded."""
    payload = dict(body)

    for name in TOP_K_FIELDS:
        if name in payload:
            payload[name] = decision.clamp_top_k(payload[name])

    for name in CONTEXT_FIELDS:
        if isinstance(payload.get(name), str):
            payload[name] = decision.clamp_context(payload[name])

    retrieval = payload.get("retrieval")
    if isinstance(retrieval, dict):
        retrieval = dict(retrieval)
        for name in TOP_K_FIELDS:
            if name in retrieval:
                retrieval[name] = decision.clamp_top_k(retrieval[name])
        if isinstance(retrieval.get("context"), str):
            retrieval["context"] = decision.clamp_context(retrieval["context"])
        payload["retrieval"] = retrieval

    messages = payload.get("messages")
    if isinstance(messages, list):
        clamped_messages = []
        for message in messages:
            if isinstance(message, dict) and "content" in message:
                message = dict(message)
                message["content"] = _clamp_message_content(message["content"], decision)
            clamped_messages.append(message)
        payload["messages"] = clamped_messages

    return payload


def requested_top_k(payload: Dict[str, Any]) -> Optional[int]:
    """The clamped top-K the caller asked for, if any."""
    for name in TOP_K_FIELDS:
        if isinstance(payload.get(name), int):
            return payload[name]
    retrieval = payload.get("retrieval")
    if isinstance(retrieval, dict):
        for name in TOP_K_FIELDS:
            if isinstance(retrieval.get(name), int):
                return retrieval[name]
    return None
