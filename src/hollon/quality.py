from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from hollon.backends.base import BackendProcessError, ExecutionResult
from hollon.backends.process import ProcessRunner
from hollon.state.base import CostTracker, Task

logger = logging.getLogger(__name__)

ERROR_LINE_PATTERN = re.compile(r"^(error|fatal|exception):", re.IGNORECASE)
ERROR_PHRASES = ("command not found", "permission denied")
EXACT_OUTPUT_CRITERION = re.compile(r"output\s+exactly\s+['\"](.+)['\"]", re.IGNORECASE)
SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
OUTPUT_TAIL_CHARS = 1000


@dataclass(slots=True, frozen=True)
class CheckResult:
    name: str
    passed: bool
    detail: str = ""
    terminal: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "detail": self.detail,
            "terminal": self.terminal,
        }


@dataclass(slots=True)
class ValidationOutcome:
    passed: bool
    should_retry: bool
    reason: str | None = None
    checks: list[CheckResult] = field(default_factory=list)

    @classmethod
    def from_checks(
        cls, checks: list[CheckResult], terminal_checks: Iterable[str] = ()
    ) -> ValidationOutcome:
        terminal_names = set(terminal_checks)
        failures = [check for check in checks if not check.passed]
        if not failures:
            return cls(passed=True, should_retry=False, reason=None, checks=checks)
        terminal = [
            check for check in failures if check.terminal or check.name in terminal_names
        ]
        first = terminal[0] if terminal else failures[0]
        return cls(
            passed=False,
            should_retry=not terminal,
            reason=first.detail or f"{first.name} check failed",
            checks=checks,
        )

    @property
    def failed_checks(self) -> list[str]:
        return [check.name for check in self.checks if not check.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "should_retry": self.should_retry,
            "reason": self.reason,
            "checks": [check.to_dict() for check in self.checks],
        }


def expected_output_for(task: Task) -> str | None:
    if task.expected_output is not None:
        return task.expected_output
    for criterion in task.acceptance_criteria:
        match = EXACT_OUTPUT_CRITERION.search(criterion)
        if match:
            return match.group(1)
    return None


class QualityGate:
    """Validates a successful provider result before the task is completed.

    Every check runs, in order, so the outcome lists all failures. A failure
    stops retries when the check marks itself terminal or its name is one of
    `terminal_checks`.
    """

    def __init__(
        self,
        cost_tracker: CostTracker,
        *,
        runner: ProcessRunner | None = None,
        min_output_chars: int = 1,
        lint_command: str = "",
        type_check_command: str = "",
        test_command: str = "",
        command_timeout_seconds: float = 300.0,
        single_execution_budget_ratio: float = 0.1,
        terminal_checks: Iterable[str] = ("cost_within_budget",),
    ) -> None:
        self.cost_tracker = cost_tracker
        self.runner = runner or ProcessRunner()
        self.min_output_chars = max(1, min_output_chars)
        self.lint_command = lint_command.strip()
        self.type_check_command = type_check_command.strip()
        self.test_command = test_command.strip()
        self.command_timeout_seconds = command_timeout_seconds
        self.single_execution_budget_ratio = single_execution_budget_ratio
        self.terminal_checks = tuple(terminal_checks)

    async def validate(
        self, result: ExecutionResult, task: Task, organization_id: str
    ) -> ValidationOutcome:
        checks = [
            self.check_result_exists(result),
            self.check_format_compliance(result, task),
            await self.check_code_quality(task),
            await self.check_tests(task),
            await self.check_cost_within_budget(result, organization_id),
        ]
        outcome = ValidationOutcome.from_checks(checks, self.terminal_checks)
        if outcome.passed:
            logger.info("Quality gate passed for task %s", task.id)
        else:
            logger.warning(
                "Quality gate failed for task %s: checks=%s retry=%s reason=%s",
                task.id,
                ",".join(outcome.failed_checks),
                outcome.should_retry,
                outcome.reason,
            )
        return outcome

    def check_result_exists(self, result: ExecutionResult) -> CheckResult:
        output = result.output.strip()
        if not output:
            return CheckResult("result_exists", False, "Brain provider returned empty output")
        if len(output) < self.min_output_chars:
            return CheckResult(
                "result_exists",
                False,
                f"Output too short: {len(output)} chars (minimum {self.min_output_chars})",
            )
        return CheckResult("result_exists", True)

    def check_format_compliance(self, result: ExecutionResult, task: Task) -> CheckResult:
        output = result.output.strip()
        if ERROR_LINE_PATTERN.match(output):
            first_line = output.splitlines()[0]
            return CheckResult("format_compliance", False, f"Output reports an error: {first_line}")
        lowered = output.lower()
        for phrase in ERROR_PHRASES:
            if phrase in lowered:
                return CheckResult("format_compliance", False, f"Output contains '{phrase}'")

        expected = expected_output_for(task)
        if expected is not None and output != expected.strip():
            return CheckResult(
                "format_compliance",
                False,
                f"Expected output {expected.strip()!r}, got {output[:200]!r}",
            )

        if task.output_pattern:
            try:
                pattern = re.compile(task.output_pattern)
            except re.error as exc:
                return CheckResult(
                    "format_compliance",
                    False,
                    f"Task {task.id} is malformed: invalid output_pattern: {exc}",
                    terminal=True,
                )
            if not pattern.search(output):
                return CheckResult(
                    "format_compliance",
                    False,
                    f"Output does not match pattern {task.output_pattern!r}",
                )
        return CheckResult("format_compliance", True)

    async def _run_command(self, command: str, cwd: str) -> tuple[bool, str]:
        if SHELL_REQUIRED_PATTERN.search(command):
            executable, args = "sh", ["-c", command]
        else:
            try:
                tokens = shlex.split(command)
            except ValueError:
                tokens = ["sh", "-c", command]
            executable, args = tokens[0], tokens[1:]

        try:
            outcome = await self.runner.spawn(
                executable,
                args,
                cwd=cwd,
                timeout_seconds=self.command_timeout_seconds,
            )
        except BackendProcessError as exc:
            return False, str(exc)
        if outcome.timed_out:
            return False, f"'{command}' timed out after {self.command_timeout_seconds:.0f}s"
        if outcome.exit_code != 0:
            tail = outcome.combined_output[-OUTPUT_TAIL_CHARS:]
            return False, f"'{command}' exited with code {outcome.exit_code}: {tail}"
        return True, ""

    async def _run_commands(
        self, name: str, commands: list[str], task: Task
    ) -> CheckResult:
        commands = [command for command in commands if command]
        if not commands:
            return CheckResult(name, True, "skipped: no command configured")
        if not task.working_directory:
            return CheckResult(name, True, "skipped: task has no working directory")
        failures: list[str] = []
        for command in commands:
            ok, detail = await self._run_command(command, task.working_directory)
            if not ok:
                failures.append(detail)
        if failures:
            return CheckResult(name, False, "; ".join(failures))
        return CheckResult(name, True)

    async def check_code_quality(self, task: Task) -> CheckResult:
        return await self._run_commands(
            "code_quality", [self.lint_command, self.type_check_command], task
        )

    async def check_tests(self, task: Task) -> CheckResult:
        return await self._run_commands("tests", [self.test_command], task)

    async def check_cost_within_budget(
        self, result: ExecutionResult, organization_id: str
    ) -> CheckResult:
        budget = await self.cost_tracker.check_budget(organization_id)
        if not budget.within_limit:
            return CheckResult(
                "cost_within_budget", False, budget.reason or "Organization budget exceeded"
            )
        if budget.daily_limit_cents:
            ceiling = budget.daily_limit_cents * self.single_execution_budget_ratio
            spent = result.cost.total_cost_cents
            if spent > ceiling:
                return CheckResult(
                    "cost_within_budget",
                    False,
                    f"Execution cost {spent:.4f} cents exceeds {ceiling:.4f} cents "
                    f"({self.single_execution_budget_ratio:.0%} of the daily limit)",
                )
        return CheckResult("cost_within_budget", True)
