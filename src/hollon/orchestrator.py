from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from hollon.backends.base import (
    BrainProvider,
    ExecutionRequest,
    ExecutionResult,
)
from hollon.escalation import EscalationEngine, EscalationLevel
from hollon.prompts.composer import PromptComposer
from hollon.quality import CheckResult, QualityGate, ValidationOutcome
from hollon.state.base import (
    AgentProfile,
    ContextStore,
    CostRecord,
    CostTracker,
    Decision,
    DecisionLog,
    HollonStateError,
    Task,
    TaskClaimError,
    TaskStore,
)

logger = logging.getLogger(__name__)


class CycleInProgressError(RuntimeError):
    """Raised when a cycle is requested for an agent that is already executing."""


class CycleStatus(StrEnum):
    COMPLETED = "completed"
    RETRIED = "retried"
    ESCALATED = "escalated"
    SKIPPED = "skipped"


@dataclass(slots=True)
class CycleOutcome:
    status: CycleStatus
    agent_id: str
    task_id: str | None = None
    escalation_level: int | None = None
    reason: str | None = None
    duration_ms: int = 0
    result: ExecutionResult | None = None
    validation: ValidationOutcome | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "escalation_level": self.escalation_level,
            "reason": self.reason,
            "duration_ms": self.duration_ms,
            "model_used": self.result.model_used if self.result else None,
            "cost_cents": self.result.cost.total_cost_cents if self.result else None,
            "failed_checks": self.validation.failed_checks if self.validation else [],
        }


class Orchestrator:
    """Runs one execute-validate-escalate cycle per call for an agent."""

    def __init__(
        self,
        *,
        task_store: TaskStore,
        context_store: ContextStore,
        brain: BrainProvider,
        composer: PromptComposer,
        quality_gate: QualityGate,
        escalation: EscalationEngine,
        cost_tracker: CostTracker,
        decision_log: DecisionLog,
        timeout_seconds: float = 300.0,
    ) -> None:
        self.task_store = task_store
        self.context_store = context_store
        self.brain = brain
        self.composer = composer
        self.quality_gate = quality_gate
        self.escalation = escalation
        self.cost_tracker = cost_tracker
        self.decision_log = decision_log
        self.timeout_seconds = timeout_seconds
        self._in_flight: set[str] = set()

    async def run_cycle(self, agent_id: str) -> CycleOutcome:
        if agent_id in self._in_flight:
            raise CycleInProgressError(f"Agent {agent_id} already has a cycle in progress")
        self._in_flight.add(agent_id)
        started = time.monotonic()
        try:
            outcome = await self._run_cycle(agent_id)
        finally:
            self._in_flight.discard(agent_id)
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Cycle for agent %s finished: status=%s task=%s duration=%sms",
            agent_id,
            outcome.status,
            outcome.task_id,
            outcome.duration_ms,
        )
        return outcome

    async def run_agents(self, agent_ids: list[str]) -> list[CycleOutcome | BaseException]:
        results = await asyncio.gather(
            *(self.run_cycle(agent_id) for agent_id in agent_ids),
            return_exceptions=True,
        )
        for agent_id, result in zip(agent_ids, results):
            if isinstance(result, BaseException):
                logger.error("Cycle for agent %s failed: %s", agent_id, result)
        return results

    async def _run_cycle(self, agent_id: str) -> CycleOutcome:
        agent = await self.context_store.get_agent(agent_id)
        if agent is None:
            raise HollonStateError(f"Unknown agent: {agent_id}")
        if agent.status == "paused":
            logger.info("Agent %s is paused; skipping cycle", agent_id)
            return CycleOutcome(CycleStatus.SKIPPED, agent_id, reason="agent paused")

        task = await self.task_store.pull_next_task(agent_id)
        if task is None:
            logger.debug("No ready task for agent %s", agent_id)
            return CycleOutcome(CycleStatus.SKIPPED, agent_id, reason="no ready task")
        try:
            task = await self.task_store.claim_task(task.id, agent_id)
        except TaskClaimError as exc:
            logger.info("Agent %s lost the claim on task %s: %s", agent_id, task.id, exc)
            return CycleOutcome(CycleStatus.SKIPPED, agent_id, task_id=task.id, reason=str(exc))

        await self._set_agent_status(agent_id, "working")
        try:
            return await self._work_on(agent, task)
        finally:
            await self._set_agent_status(agent_id, "idle")

    async def _work_on(self, agent: AgentProfile, task: Task) -> CycleOutcome:
        # The claimed task must leave in_progress on every path out of here.
        settled = False
        try:
            result = await self._execute(agent, task)
            await self._record_cost(agent, task, result)

            if result.success:
                validation = await self.quality_gate.validate(result, task, task.organization_id)
            else:
                validation = ValidationOutcome.from_checks(
                    [
                        CheckResult(
                            "execution",
                            False,
                            result.error or "Brain provider execution failed",
                            terminal=not result.retriable,
                        )
                    ]
                )

            if validation.passed:
                await self._complete(agent, task, result, validation)
                settled = True
                return CycleOutcome(
                    CycleStatus.COMPLETED,
                    agent.id,
                    task_id=task.id,
                    result=result,
                    validation=validation,
                )

            team = await self.context_store.get_team(agent.team_id) if agent.team_id else None
            decision = await self.escalation.escalate(task, agent.id, validation, team)
            settled = True
        except BaseException as exc:
            if not settled:
                logger.error("Cycle for agent %s aborted on task %s: %s", agent.id, task.id, exc)
                await self._release(task)
            raise

        status = (
            CycleStatus.RETRIED
            if decision.level == EscalationLevel.SELF_RESOLVE
            else CycleStatus.ESCALATED
        )
        return CycleOutcome(
            status,
            agent.id,
            task_id=task.id,
            escalation_level=int(decision.level),
            reason=validation.reason,
            result=result,
            validation=validation,
        )

    async def _release(self, task: Task) -> None:
        try:
            await self.task_store.release_task(task.id)
        except Exception:
            logger.exception("Failed to release task %s", task.id)

    async def _set_agent_status(self, agent_id: str, status: str) -> None:
        try:
            await self.context_store.set_agent_status(agent_id, status)
        except Exception:
            logger.exception("Failed to set agent %s status to %s", agent_id, status)

    async def _execute(self, agent: AgentProfile, task: Task) -> ExecutionResult:
        prompt = await self.composer.compose(agent, task)
        request = ExecutionRequest(
            system_prompt=prompt.system_prompt,
            prompt=prompt.user_prompt,
            timeout_seconds=self.timeout_seconds,
            working_directory=task.working_directory,
            disallowed_tools=tuple(agent.disallowed_tools),
        )
        return await self.brain.execute(request)

    async def _record_cost(self, agent: AgentProfile, task: Task, result: ExecutionResult) -> None:
        record = CostRecord(
            organization_id=task.organization_id,
            agent_id=agent.id,
            task_id=task.id,
            model=result.model_used,
            input_tokens=result.cost.input_tokens,
            output_tokens=result.cost.output_tokens,
            cost_cents=result.cost.total_cost_cents,
        )
        try:
            await self.cost_tracker.record_cost(record)
        except Exception:
            logger.exception("Failed to record cost for task %s", task.id)

    async def _complete(
        self,
        agent: AgentProfile,
        task: Task,
        result: ExecutionResult,
        validation: ValidationOutcome,
    ) -> None:
        await self.task_store.mark_complete(
            task.id,
            {
                "output": result.output,
                "model_used": result.model_used,
                "duration_ms": result.duration_ms,
                "cost": result.cost.to_dict(),
                "checks": [check.to_dict() for check in validation.checks],
            },
        )
        try:
            await self.decision_log.log_decision(
                Decision(
                    kind="task_completed",
                    organization_id=task.organization_id,
                    summary=f"Task {task.id} completed by {agent.id}",
                    task_id=task.id,
                    agent_id=agent.id,
                    details={
                        "model_used": result.model_used,
                        "previous_escalation_level": task.escalation_level,
                        "retry_count": task.retry_count,
                    },
                )
            )
        except Exception:
            logger.exception("Failed to record completion decision for task %s", task.id)
