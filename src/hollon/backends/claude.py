from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from hollon.backends.base import (
    BackendProcessError,
    BrainProvider,
    ExecutionRequest,
    ExecutionResult,
)
from hollon.backends.cost import CostCalculator
from hollon.backends.parser import ResponseParser
from hollon.backends.process import ProcessRunner

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]

RATE_LIMIT_SIGNATURES = (
    "rate limit",
    "rate_limit",
    "limit reached",
    "429",
    "overloaded",
    "too many requests",
    "capacity",
    "quota",
)
HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


def is_rate_limited(result: ExecutionResult) -> bool:
    # Providers print rate-limit notices on stdout as often as on stderr.
    if result.success:
        return False
    text = f"{result.error or ''} {result.output}".lower()
    return any(signature in text for signature in RATE_LIMIT_SIGNATURES)


class ClaudeCodeBackend(BrainProvider):
    def __init__(
        self,
        binary: str = "claude",
        *,
        primary_model: str = "sonnet",
        fallback_model: str = "haiku",
        runner: ProcessRunner | None = None,
        parser: ResponseParser | None = None,
        cost_calculator: CostCalculator | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.runner = runner or ProcessRunner()
        self.parser = parser or ResponseParser()
        self.cost_calculator = cost_calculator or CostCalculator()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def build_command(self, request: ExecutionRequest, model: str) -> list[str]:
        command = [
            self.binary,
            "-p",
            "--output-format",
            "text",
            "--dangerously-skip-permissions",
            "--model",
            model,
        ]
        if request.system_prompt:
            command.extend(["--system-prompt", request.system_prompt])
        if request.disallowed_tools:
            command.extend(["--disallowed-tools", ",".join(request.disallowed_tools)])
        return command

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        result = await self._execute_with_model(request, self.primary_model)
        if result.success or not is_rate_limited(result):
            return result
        if self.fallback_model == self.primary_model:
            return result

        logger.warning(
            "Rate limit hit on %s, falling back to %s", self.primary_model, self.fallback_model
        )
        self._emit(
            {
                "event": "backend_fallback_start",
                "backend": "claude",
                "from_model": self.primary_model,
                "to_model": self.fallback_model,
                "error": result.error,
            }
        )
        fallback = await self._execute_with_model(request, self.fallback_model)
        fallback.metadata["fallback_from"] = self.primary_model
        self._emit(
            {
                "event": (
                    "backend_fallback_success" if fallback.success else "backend_fallback_failed"
                ),
                "backend": "claude",
                "model": self.fallback_model,
                "error": fallback.error,
            }
        )
        return fallback

    async def _execute_with_model(self, request: ExecutionRequest, model: str) -> ExecutionResult:
        started = time.monotonic()
        command = self.build_command(request, model)
        estimate = self.cost_calculator.estimate(request.prompt, request.system_prompt)
        logger.info(
            "Executing Claude Code with model=%s: timeout=%.0fs, estimated_cost=%.4f cents",
            model,
            request.timeout_seconds,
            estimate.total_cost_cents,
        )

        outcome = await self.runner.spawn(
            command[0],
            command[1:],
            input=request.prompt,
            cwd=request.working_directory,
            timeout_seconds=request.timeout_seconds,
        )
        metadata: dict[str, Any] = {"model_used": model, "exit_code": outcome.exit_code}

        if outcome.timed_out:
            error = f"Claude Code timed out after {request.timeout_seconds:.0f}s"
        elif outcome.exit_code != 0:
            error = f"Claude Code exited with code {outcome.exit_code}"
        else:
            error = None

        if error is not None:
            logger.error(
                "Claude Code execution failed (model=%s): %s, duration=%sms",
                model,
                error,
                outcome.duration_ms,
            )
            metadata["timed_out"] = outcome.timed_out
            self._emit(
                {
                    "event": "backend_attempt_failed",
                    "backend": "claude",
                    "model": model,
                    "error": error,
                    "exit_code": outcome.exit_code,
                }
            )
            return ExecutionResult.failure(
                error,
                output=outcome.combined_output,
                duration_ms=outcome.duration_ms,
                cost=estimate,
                metadata=metadata,
            )

        parsed = self.parser.parse(outcome.stdout)
        if parsed.metadata:
            metadata = {**parsed.metadata, **metadata}
        if parsed.has_error:
            error = f"Claude Code returned error: {parsed.error_message}"
            logger.error("Claude Code execution failed (model=%s): %s", model, error)
            self._emit(
                {
                    "event": "backend_attempt_failed",
                    "backend": "claude",
                    "model": model,
                    "error": error,
                    "exit_code": outcome.exit_code,
                }
            )
            return ExecutionResult.failure(
                error,
                output=parsed.output,
                duration_ms=outcome.duration_ms,
                cost=estimate,
                metadata=metadata,
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Claude Code execution completed (model=%s): duration=%sms, output_length=%s",
            model,
            elapsed_ms,
            len(parsed.output),
        )
        return ExecutionResult(
            success=True,
            output=parsed.output,
            duration_ms=outcome.duration_ms,
            cost=estimate,
            metadata=metadata,
        )

    async def health_check(self) -> bool:
        try:
            outcome = await self.runner.spawn(
                self.binary,
                ["--version"],
                timeout_seconds=HEALTH_CHECK_TIMEOUT_SECONDS,
            )
        except BackendProcessError:
            return False
        return outcome.exit_code == 0 and not outcome.timed_out
