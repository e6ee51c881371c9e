from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from llm_gateway.capabilities import (
    CODE_GENERATION,
    LONG_CONTEXT,
    MULTILINGUAL,
    THINKING,
)
from llm_gateway.config import AnalyzerConfig

PRIORITIES = ("low", "medium", "high", "critical")
DEFAULT_PRIORITY = "medium"
COMPLEXITY_LEVELS = ("simple", "medium", "complex")

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(slots=True)
class RequestFeatures:
    required_capabilities: frozenset[str] = frozenset()
    context_length: int = 0
    message_count: int = 0
    complexity: str = "simple"
    priority: str = DEFAULT_PRIORITY
    special_requirements: dict[str, bool] = field(default_factory=dict)
    signals: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "required_capabilities": sorted(self.required_capabilities),
            "context_length": self.context_length,
            "message_count": self.message_count,
            "complexity": self.complexity,
            "priority": self.priority,
            "special_requirements": dict(self.special_requirements),
            "signals": dict(self.signals),
        }


def _content_texts(content: Any) -> tuple[list[str], bool]:
    """Returns (texts, has_image) for string content or a list of content parts."""
    if isinstance(content, str):
        return [content], False
    if not isinstance(content, list):
        return [], False

    texts: list[str] = []
    has_image = False
    for part in content:
        if isinstance(part, str):
            texts.append(part)
            continue
        if not isinstance(part, dict):
            continue
        part_type = str(part.get("type") or "").lower()
        if "image" in part_type:
            has_image = True
            continue
        text = part.get("text")
        if isinstance(text, str):
            texts.append(text)
    return texts, has_image


def _header(request: dict[str, Any], name: str) -> str | None:
    headers = request.get("headers")
    if not isinstance(headers, dict):
        return None
    for key, value in headers.items():
        if isinstance(key, str) and key.lower() == name:
            return str(value).strip() if value is not None else None
    return None


def _metadata(request: dict[str, Any], name: str) -> Any:
    metadata = request.get("metadata")
    if isinstance(metadata, dict):
        return metadata.get(name)
    return None


def _is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return False


def _bucket(value: int, simple_max: int, medium_max: int) -> int:
    if value <= simple_max:
        return 0
    if value <= medium_max:
        return 1
    return 2


def _matched(keywords: list[str], text: str) -> list[str]:
    # Whole words only: "reason" must not fire on "reasonable".
    return [
        keyword
        for keyword in keywords
        if re.search(rf"(?<!\w){re.escape(keyword)}(?!\w)", text)
    ]


class RequestFeatureAnalyzer:
    def __init__(self, config: AnalyzerConfig | None = None) -> None:
        self.config = config or AnalyzerConfig()

    def analyze(self, request: dict[str, Any]) -> RequestFeatures:
        cfg = self.config
        raw_messages = request.get("messages")
        messages = [
            message
            for message in (raw_messages if isinstance(raw_messages, list) else [])
            if isinstance(message, dict)
        ]

        context_length = 0
        has_image = False
        latest_user_text = ""
        for message in messages:
            texts, message_has_image = _content_texts(message.get("content"))
            context_length += sum(len(text) for text in texts)
            text = "\n".join(texts)
            has_image = has_image or message_has_image
            role = message.get("role")
            if isinstance(role, str) and role.strip().lower() == "user":
                latest_user_text = text
        if not messages and isinstance(request.get("prompt"), str):
            latest_user_text = request["prompt"]
            context_length = len(latest_user_text)

        text_lower = latest_user_text.lower()
        required: set[str] = set()
        signals: dict[str, Any] = {}

        long_context_hints = _matched(cfg.long_context_keywords, text_lower)
        long_context_flag = (
            _is_truthy(request.get("long_context"))
            or _is_truthy(_metadata(request, "long_context"))
            or _is_truthy(_header(request, "x-long-context"))
        )
        if (
            context_length > cfg.long_context_threshold_chars
            or long_context_flag
            or long_context_hints
        ):
            required.add(LONG_CONTEXT)
        signals["matched_long_context_hints"] = long_context_hints
        signals["long_context_flag"] = long_context_flag

        thinking_hints = _matched(cfg.thinking_keywords, text_lower)
        reasoning_effort = request.get("reasoning_effort")
        if not isinstance(reasoning_effort, str):
            reasoning = request.get("reasoning")
            reasoning_effort = (
                reasoning.get("effort") if isinstance(reasoning, dict) else None
            )
        if thinking_hints or isinstance(reasoning_effort, str):
            required.add(THINKING)
        signals["matched_thinking_hints"] = thinking_hints
        signals["reasoning_effort"] = reasoning_effort

        code_hints = _matched(cfg.code_keywords, text_lower)
        has_code_fence = "```" in latest_user_text
        if code_hints or has_code_fence:
            required.add(CODE_GENERATION)
        signals["matched_code_hints"] = code_hints
        signals["code_fence"] = has_code_fence

        multilingual_hints = _matched(cfg.multilingual_keywords, text_lower)
        language = self._language_tag(request)
        if multilingual_hints or (language and not language.startswith("en")):
            required.add(MULTILINGUAL)
        signals["matched_multilingual_hints"] = multilingual_hints
        signals["language"] = language

        complexity_index = max(
            _bucket(len(messages), cfg.simple_max_messages, cfg.medium_max_messages),
            _bucket(context_length, cfg.simple_max_chars, cfg.medium_max_chars),
        )

        return RequestFeatures(
            required_capabilities=frozenset(required),
            context_length=context_length,
            message_count=len(messages),
            complexity=COMPLEXITY_LEVELS[complexity_index],
            priority=self._priority(request),
            special_requirements={
                "streaming": _is_truthy(request.get("stream")),
                "tools": bool(request.get("tools") or request.get("functions")),
                "vision": has_image,
            },
            signals=signals,
        )

    @staticmethod
    def _priority(request: dict[str, Any]) -> str:
        for candidate in (
            request.get("priority"),
            _metadata(request, "priority"),
            _header(request, "x-priority"),
        ):
            if isinstance(candidate, str) and candidate.strip().lower() in PRIORITIES:
                return candidate.strip().lower()
        return DEFAULT_PRIORITY

    @staticmethod
    def _language_tag(request: dict[str, Any]) -> str | None:
        for candidate in (
            request.get("language"),
            _metadata(request, "language"),
            _header(request, "x-language"),
            _header(request, "accept-language"),
        ):
            if isinstance(candidate, str) and candidate.strip():
                # "fr-CA,fr;q=0.9" -> "fr-ca"
                return candidate.split(",")[0].split(";")[0].strip().lower()
        return None
