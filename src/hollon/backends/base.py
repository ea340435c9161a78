from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when a brain provider execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.retriable = retriable


class BackendProcessError(BackendExecutionError):
    """Raised when the provider process cannot be started at all."""


@dataclass(slots=True, frozen=True)
class CostEstimate:
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost_cents: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_cost_cents": self.total_cost_cents,
        }


@dataclass(slots=True, frozen=True)
class ExecutionRequest:
    system_prompt: str
    prompt: str
    timeout_seconds: float
    working_directory: str | None = None
    disallowed_tools: tuple[str, ...] = ()


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    output: str
    duration_ms: int
    cost: CostEstimate = field(default_factory=CostEstimate)
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    retriable: bool = True

    @property
    def model_used(self) -> str | None:
        model = self.metadata.get("model_used")
        return model if isinstance(model, str) else None

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        output: str = "",
        duration_ms: int = 0,
        cost: CostEstimate | None = None,
        metadata: dict[str, Any] | None = None,
        retriable: bool = True,
    ) -> ExecutionResult:
        return cls(
            success=False,
            output=output,
            duration_ms=duration_ms,
            cost=cost or CostEstimate(),
            metadata=dict(metadata or {}),
            error=error,
            retriable=retriable,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "duration_ms": self.duration_ms,
            "cost": self.cost.to_dict(),
            "metadata": dict(self.metadata),
            "error": self.error,
            "retriable": self.retriable,
        }


class BrainProvider(ABC):
    @abstractmethod
    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one request and describe the outcome; raise only for infrastructure errors."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Report whether the provider executable is usable."""
