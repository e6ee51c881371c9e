from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class GatewayError(Exception):
    """Base class for every error raised by the gateway core."""


class ModuleLookupError(GatewayError, LookupError):
    def __init__(self, *, kind: str, key: str, message: str | None = None):
        self.kind = kind
        self.key = key
        super().__init__(message or f"No {kind} module registered for '{key}'.")


class VirtualModelNotFoundError(GatewayError, KeyError):
    def __init__(self, virtual_model_id: str, available: list[str] | None = None):
        self.virtual_model_id = virtual_model_id
        self.available = list(available or [])
        super().__init__(virtual_model_id)

    def __str__(self) -> str:
        return f"Virtual model '{self.virtual_model_id}' is not configured."


class ModelRecordNotFoundError(GatewayError, KeyError):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(reference)

    def __str__(self) -> str:
        return f"No provider model matches '{self.reference}'."


class ProviderError(GatewayError):
    """Retryable failure reported by (or while talking to) a provider module."""

    def __init__(
        self,
        message: str,
        *,
        provider_id: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.provider_id = provider_id
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ExecutionTimeoutError(ProviderError):
    def __init__(self, *, provider_id: str | None, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Provider call exceeded {timeout_seconds:g}s.",
            provider_id=provider_id,
        )


@dataclass(slots=True)
class AttemptFailure:
    pipeline_id: str
    provider_id: str
    model_id: str
    error_type: str
    error: str

    def as_dict(self) -> dict[str, str]:
        return {
            "pipeline_id": self.pipeline_id,
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "error_type": self.error_type,
            "error": self.error,
        }


class NoAvailableTargetError(GatewayError):
    def __init__(
        self,
        virtual_model_id: str,
        attempts: list[AttemptFailure] | None = None,
        *,
        reason: str = "exhausted",
    ):
        self.virtual_model_id = virtual_model_id
        self.attempts = list(attempts or [])
        self.reason = reason
        super().__init__(
            f"No available target for virtual model '{virtual_model_id}' "
            f"after {len(self.attempts)} attempted target(s) ({reason})."
        )

    @property
    def attempted_targets(self) -> list[str]:
        return [f"{item.provider_id}:{item.model_id}" for item in self.attempts]

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": "no_available_target",
            "message": str(self),
            "virtual_model_id": self.virtual_model_id,
            "reason": self.reason,
            "attempted_count": len(self.attempts),
            "attempts": [item.as_dict() for item in self.attempts],
        }
