from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from hollon.quality import ValidationOutcome
from hollon.state.base import Decision, DecisionLog, Task, TaskStore, TeamContext

logger = logging.getLogger(__name__)


class EscalationLevel(IntEnum):
    SELF_RESOLVE = 1
    TEAM_COLLABORATION = 2
    TEAM_LEADER = 3
    ORGANIZATION = 4
    HUMAN_INTERVENTION = 5


ACTIONS = {
    EscalationLevel.SELF_RESOLVE: "retry",
    EscalationLevel.TEAM_COLLABORATION: "release_to_team",
    EscalationLevel.TEAM_LEADER: "escalate_to_leader",
    EscalationLevel.ORGANIZATION: "escalate_to_organization",
    EscalationLevel.HUMAN_INTERVENTION: "request_human",
}
TASK_STATUS_FOR_LEVEL = {
    EscalationLevel.SELF_RESOLVE: "ready",
    EscalationLevel.TEAM_COLLABORATION: "ready",
    EscalationLevel.TEAM_LEADER: "in_review",
    EscalationLevel.ORGANIZATION: "blocked",
    EscalationLevel.HUMAN_INTERVENTION: "blocked",
}


@dataclass(slots=True, frozen=True)
class EscalationState:
    level: EscalationLevel = EscalationLevel.SELF_RESOLVE
    attempt_count: int = 0
    last_reason: str | None = None

    @classmethod
    def from_task(cls, task: Task) -> EscalationState | None:
        if task.escalation_level <= 0:
            return None
        level = min(int(task.escalation_level), int(EscalationLevel.HUMAN_INTERVENTION))
        return cls(
            level=EscalationLevel(level),
            attempt_count=task.retry_count,
            last_reason=task.last_failure_reason,
        )


@dataclass(slots=True, frozen=True)
class EscalationDecision:
    state: EscalationState
    action: str
    task_status: str
    message: str
    requires_human: bool = False

    @property
    def level(self) -> EscalationLevel:
        return self.state.level

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": int(self.state.level),
            "level_name": self.state.level.name,
            "attempt_count": self.state.attempt_count,
            "action": self.action,
            "task_status": self.task_status,
            "message": self.message,
            "requires_human": self.requires_human,
        }


class EscalationEngine:
    """Maps a failed validation onto the five-level escalation ladder.

    `decide` is pure. `escalate` applies the decision to the task store and
    records it in the decision log.
    """

    def __init__(
        self,
        task_store: TaskStore,
        decision_log: DecisionLog | None = None,
        *,
        max_retries: int = 3,
    ) -> None:
        self.task_store = task_store
        self.decision_log = decision_log
        self.max_retries = max(0, max_retries)

    def decide(
        self, state: EscalationState | None, validation: ValidationOutcome
    ) -> EscalationDecision:
        current = state or EscalationState()
        reason = validation.reason or "validation failed"
        attempts = current.attempt_count

        if current.level == EscalationLevel.SELF_RESOLVE:
            if validation.should_retry:
                attempts += 1
                if attempts <= self.max_retries:
                    return EscalationDecision(
                        state=EscalationState(EscalationLevel.SELF_RESOLVE, attempts, reason),
                        action=ACTIONS[EscalationLevel.SELF_RESOLVE],
                        task_status=TASK_STATUS_FOR_LEVEL[EscalationLevel.SELF_RESOLVE],
                        message=f"Retry {attempts}/{self.max_retries}: {reason}",
                    )
            next_level = EscalationLevel.TEAM_COLLABORATION
        else:
            next_level = EscalationLevel(
                min(int(current.level) + 1, int(EscalationLevel.HUMAN_INTERVENTION))
            )

        requires_human = next_level == EscalationLevel.HUMAN_INTERVENTION
        return EscalationDecision(
            state=EscalationState(next_level, attempts, reason),
            action=ACTIONS[next_level],
            task_status=TASK_STATUS_FOR_LEVEL[next_level],
            message=f"Escalated to level {int(next_level)} ({next_level.name}): {reason}",
            requires_human=requires_human,
        )

    @staticmethod
    def _assignee(
        decision: EscalationDecision, task: Task, agent_id: str, team: TeamContext | None
    ) -> str | None:
        level = decision.level
        if level == EscalationLevel.SELF_RESOLVE:
            return agent_id
        if level == EscalationLevel.TEAM_COLLABORATION:
            # Without a team nobody else can pull the task, so the agent keeps it.
            return None if task.team_id or team else agent_id
        if level == EscalationLevel.TEAM_LEADER:
            return team.leader_id if team and team.leader_id else None
        return agent_id

    async def escalate(
        self,
        task: Task,
        agent_id: str,
        validation: ValidationOutcome,
        team: TeamContext | None = None,
    ) -> EscalationDecision:
        decision = self.decide(EscalationState.from_task(task), validation)
        assignee = self._assignee(decision, task, agent_id, team)
        changes: dict[str, Any] = {}
        if decision.level == EscalationLevel.TEAM_COLLABORATION and not task.team_id and team:
            changes["team_id"] = team.id
        await self.task_store.mark_failed(
            task.id,
            status=decision.task_status,
            assigned_agent_id=assignee,
            escalation_level=int(decision.level),
            retry_count=decision.state.attempt_count,
            reason=decision.state.last_reason,
            requires_human=decision.requires_human,
            **changes,
        )
        log = logger.info if decision.level == EscalationLevel.SELF_RESOLVE else logger.warning
        log("Task %s: %s (assignee=%s)", task.id, decision.message, assignee or "team")

        if self.decision_log is not None:
            try:
                await self.decision_log.log_decision(
                    Decision(
                        kind="escalation",
                        organization_id=task.organization_id,
                        summary=decision.message,
                        task_id=task.id,
                        agent_id=agent_id,
                        details={
                            **decision.to_dict(),
                            "assigned_agent_id": assignee,
                            "failed_checks": validation.failed_checks,
                        },
                    )
                )
            except Exception:
                logger.exception("Failed to record escalation decision for task %s", task.id)
        return decision
