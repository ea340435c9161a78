from hollon.state.base import (
    AgentProfile,
    BudgetCheck,
    ContextStore,
    CostRecord,
    CostTracker,
    Decision,
    DecisionLog,
    HollonStateError,
    KnowledgeItem,
    OrganizationContext,
    RoleContext,
    Task,
    TaskClaimError,
    TaskStore,
    TeamContext,
)
from hollon.state.local import LocalStateStore

__all__ = [
    "AgentProfile",
    "BudgetCheck",
    "ContextStore",
    "CostRecord",
    "CostTracker",
    "Decision",
    "DecisionLog",
    "HollonStateError",
    "KnowledgeItem",
    "LocalStateStore",
    "OrganizationContext",
    "RoleContext",
    "Task",
    "TaskClaimError",
    "TaskStore",
    "TeamContext",
]
