from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

TASK_STATUSES = {"ready", "in_progress", "in_review", "blocked", "completed"}
AGENT_STATUSES = {"idle", "working", "paused"}
PRIORITY_ORDER = {"P1": 1, "P2": 2, "P3": 3, "P4": 4}


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class HollonStateError(RuntimeError):
    """Raised when collaborator state operations fail."""


class TaskClaimError(HollonStateError):
    """Raised when a task can no longer be claimed by the requesting agent."""


def _from_known_fields(cls: type, payload: dict[str, Any]) -> dict[str, Any]:
    names = {item.name for item in fields(cls)}
    return {key: value for key, value in payload.items() if key in names}


@dataclass(slots=True)
class Task:
    id: str
    title: str
    organization_id: str
    description: str = ""
    team_id: str | None = None
    assigned_agent_id: str | None = None
    status: str = "ready"
    priority: str = "P3"
    acceptance_criteria: list[str] = field(default_factory=list)
    affected_files: list[str] = field(default_factory=list)
    working_directory: str | None = None
    expected_output: str | None = None
    output_pattern: str | None = None
    escalation_level: int = 0
    retry_count: int = 0
    last_failure_reason: str | None = None
    requires_human: bool = False
    result: dict[str, Any] | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str | None = None
    completed_at: str | None = None

    @property
    def priority_rank(self) -> int:
        return PRIORITY_ORDER.get(self.priority.upper(), len(PRIORITY_ORDER) + 1)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        try:
            values = _from_known_fields(cls, payload)
            values["id"] = str(payload["id"])
            values["title"] = str(payload["title"])
            values["organization_id"] = str(payload["organization_id"])
            values["acceptance_criteria"] = [str(item) for item in payload.get("acceptance_criteria") or []]
            values["affected_files"] = [str(item) for item in payload.get("affected_files") or []]
            values["escalation_level"] = int(payload.get("escalation_level") or 0)
            values["retry_count"] = int(payload.get("retry_count") or 0)
            values["requires_human"] = bool(payload.get("requires_human", False))
            return cls(**values)
        except (KeyError, TypeError, ValueError) as exc:
            raise HollonStateError(f"Invalid task payload: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class AgentProfile:
    id: str
    name: str
    organization_id: str
    team_id: str | None = None
    role_id: str | None = None
    system_prompt: str = ""
    capabilities: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    status: str = "idle"

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentProfile:
        return cls(**_from_known_fields(cls, payload))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class OrganizationContext:
    id: str
    name: str
    description: str = ""
    guidelines: list[str] = field(default_factory=list)
    daily_budget_cents: float | None = None
    monthly_budget_cents: float | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> OrganizationContext:
        return cls(**_from_known_fields(cls, payload))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class TeamContext:
    id: str
    name: str
    description: str = ""
    leader_id: str | None = None
    member_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TeamContext:
        return cls(**_from_known_fields(cls, payload))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RoleContext:
    id: str
    name: str
    description: str = ""
    responsibilities: list[str] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RoleContext:
        return cls(**_from_known_fields(cls, payload))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class KnowledgeItem:
    id: str
    title: str
    content: str
    organization_id: str | None = None
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> KnowledgeItem:
        return cls(**_from_known_fields(cls, payload))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CostRecord:
    organization_id: str
    agent_id: str
    task_id: str
    model: str | None
    input_tokens: int
    output_tokens: int
    cost_cents: float
    recorded_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Decision:
    kind: str
    organization_id: str
    summary: str
    task_id: str | None = None
    agent_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"decision-{uuid4().hex[:12]}")
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class BudgetCheck:
    within_limit: bool
    daily_spent_cents: float = 0.0
    daily_limit_cents: float | None = None
    monthly_spent_cents: float = 0.0
    monthly_limit_cents: float | None = None
    warning: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TaskStore(ABC):
    @abstractmethod
    async def pull_next_task(self, agent_id: str) -> Task | None:
        """Return the highest-priority ready task for the agent without claiming it."""

    @abstractmethod
    async def claim_task(self, task_id: str, agent_id: str) -> Task:
        """Atomically move a ready task to in_progress; raise TaskClaimError if lost."""

    @abstractmethod
    async def mark_complete(self, task_id: str, result: dict[str, Any]) -> Task:
        """Complete the task, store the result artifact and clear escalation state."""

    @abstractmethod
    async def mark_failed(
        self,
        task_id: str,
        *,
        status: str,
        assigned_agent_id: str | None,
        escalation_level: int,
        retry_count: int,
        reason: str | None,
        requires_human: bool = False,
        team_id: str | None = None,
    ) -> Task:
        """Apply an escalation outcome to the task."""

    @abstractmethod
    async def release_task(self, task_id: str) -> None:
        """Return an in-progress task to ready without touching escalation state."""


class ContextStore(ABC):
    @abstractmethod
    async def get_agent(self, agent_id: str) -> AgentProfile | None: ...

    @abstractmethod
    async def get_organization(self, organization_id: str) -> OrganizationContext | None: ...

    @abstractmethod
    async def get_team(self, team_id: str) -> TeamContext | None: ...

    @abstractmethod
    async def get_role(self, role_id: str) -> RoleContext | None: ...

    @abstractmethod
    async def find_knowledge(
        self, organization_id: str, keywords: list[str], limit: int
    ) -> list[KnowledgeItem]: ...

    @abstractmethod
    async def set_agent_status(self, agent_id: str, status: str) -> None: ...


class CostTracker(ABC):
    @abstractmethod
    async def check_budget(self, organization_id: str) -> BudgetCheck: ...

    @abstractmethod
    async def record_cost(self, record: CostRecord) -> None: ...


class DecisionLog(ABC):
    @abstractmethod
    async def log_decision(self, decision: Decision) -> None: ...
