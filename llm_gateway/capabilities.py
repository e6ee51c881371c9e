from __future__ import annotations

from collections.abc import Iterable

CHAT = "chat"
LONG_CONTEXT = "long-context"
THINKING = "thinking"
CODE_GENERATION = "code-generation"
MULTILINGUAL = "multilingual"
VISION = "vision"

_ALIASES = {
    "long_context": LONG_CONTEXT,
    "longcontext": LONG_CONTEXT,
    "reasoning": THINKING,
    "code": CODE_GENERATION,
    "code_generation": CODE_GENERATION,
    "coding": CODE_GENERATION,
    "translation": MULTILINGUAL,
    "image": VISION,
}

# Model id fragments that hint at a capability when none is declared.
_MODEL_ID_HINTS: dict[str, tuple[str, ...]] = {
    THINKING: ("thinking", "reasoner", "reasoning", "-r1", "qwq", "o1", "o3"),
    CODE_GENERATION: ("coder", "code", "codex", "devstral"),
    LONG_CONTEXT: ("128k", "200k", "1m", "long"),
    VISION: ("vision", "-vl", "vl-", "omni"),
    MULTILINGUAL: ("qwen", "glm", "multilingual", "aya"),
}


def normalize_capability(value: str) -> str:
    normalized = value.strip().lower()
    return _ALIASES.get(normalized, normalized)


def normalize_capabilities(values: Iterable[str] | None) -> list[str]:
    output: list[str] = []
    for value in values or ():
        if not isinstance(value, str):
            continue
        capability = normalize_capability(value)
        if capability and capability not in output:
            output.append(capability)
    return output


def infer_capabilities(model_id: str) -> list[str]:
    lowered = model_id.strip().lower()
    inferred = [CHAT]
    for capability, hints in _MODEL_ID_HINTS.items():
        if any(hint in lowered for hint in hints):
            inferred.append(capability)
    return inferred
