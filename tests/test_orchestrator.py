import asyncio
from pathlib import Path

import pytest

from hollon.backends.base import (
    BackendProcessError,
    BrainProvider,
    CostEstimate,
    ExecutionRequest,
    ExecutionResult,
)
from hollon.escalation import EscalationEngine
from hollon.orchestrator import CycleInProgressError, CycleStatus, Orchestrator
from hollon.prompts.composer import PromptComposer
from hollon.quality import QualityGate
from hollon.state.base import AgentProfile, HollonStateError, Task, TeamContext
from hollon.state.local import LocalStateStore


class ScriptedBrain(BrainProvider):
    def __init__(self, outputs: list[str | ExecutionResult | Exception]) -> None:
        self.outputs = list(outputs)
        self.requests: list[ExecutionRequest] = []
        self.gate: asyncio.Event | None = None
        self.entered: asyncio.Event | None = None

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        if isinstance(output, ExecutionResult):
            return output
        return ExecutionResult(
            success=True,
            output=output,
            duration_ms=3,
            cost=CostEstimate(input_tokens=100, output_tokens=50, total_cost_cents=0.105),
            metadata={"model_used": "sonnet"},
        )

    async def health_check(self) -> bool:
        return True


def _setup(tmp_path: Path, brain: ScriptedBrain) -> tuple[Orchestrator, LocalStateStore]:
    store = LocalStateStore(tmp_path)
    store.upsert_team(TeamContext(id="team-1", name="Platform", leader_id="lead-1"))
    for agent_id in ("agent-1", "agent-2"):
        store.upsert_agent(
            AgentProfile(
                id=agent_id,
                name=agent_id,
                organization_id="org-1",
                team_id="team-1",
                disallowed_tools=["WebFetch"],
            )
        )
    orchestrator = Orchestrator(
        task_store=store,
        context_store=store,
        brain=brain,
        composer=PromptComposer(store),
        quality_gate=QualityGate(store),
        escalation=EscalationEngine(store, store, max_retries=3),
        cost_tracker=store,
        decision_log=store,
        timeout_seconds=60,
    )
    return orchestrator, store


def _pass_task(task_id: str = "task-1", agent_id: str | None = "agent-1") -> Task:
    return Task(
        id=task_id,
        title="Print PASS",
        organization_id="org-1",
        team_id="team-1",
        assigned_agent_id=agent_id,
        description="Reply with the word PASS and nothing else.",
        acceptance_criteria=["Output must output exactly 'PASS'"],
    )


def test_cycle_without_tasks_is_skipped_without_side_effects(tmp_path: Path) -> None:
    brain = ScriptedBrain([])
    orchestrator, store = _setup(tmp_path, brain)

    outcome = asyncio.run(orchestrator.run_cycle("agent-1"))

    assert outcome.status == CycleStatus.SKIPPED
    assert outcome.task_id is None
    assert brain.requests == []
    assert store.get_cost_records() == []
    assert store.get_decisions() == []
    assert store.get_tasks() == []


def test_passing_cycle_completes_task(tmp_path: Path) -> None:
    brain = ScriptedBrain(["PASS"])
    orchestrator, store = _setup(tmp_path, brain)
    store.add_task(_pass_task())

    outcome = asyncio.run(orchestrator.run_cycle("agent-1"))

    assert outcome.status == CycleStatus.COMPLETED
    assert outcome.task_id == "task-1"
    task = store.get_task("task-1")
    assert task is not None
    assert task.status == "completed"
    assert task.result is not None and task.result["output"] == "PASS"
    assert len(store.get_cost_records()) == 1
    assert store.get_decisions()[-1]["kind"] == "task_completed"
    request = brain.requests[0]
    assert request.prompt.startswith("# Your Task: Print PASS")
    assert request.disallowed_tools == ("WebFetch",)
    assert request.timeout_seconds == 60


def test_failing_cycles_retry_then_escalate(tmp_path: Path) -> None:
    brain = ScriptedBrain(["FAIL", "FAIL", "FAIL", "FAIL"])
    orchestrator, store = _setup(tmp_path, brain)
    store.add_task(_pass_task())

    statuses = [asyncio.run(orchestrator.run_cycle("agent-1")).status for _ in range(3)]
    task = store.get_task("task-1")
    assert task is not None
    assert task.status == "ready"
    assert task.escalation_level == 1
    assert task.retry_count == 3
    assert "Previous Attempt Failed (Retry #2)" in brain.requests[2].prompt

    fourth = asyncio.run(orchestrator.run_cycle("agent-1"))

    assert statuses == [CycleStatus.RETRIED] * 3
    assert fourth.status == CycleStatus.ESCALATED
    assert fourth.escalation_level == 2
    task = store.get_task("task-1")
    assert task is not None
    assert task.status == "ready"
    assert task.assigned_agent_id is None
    assert task.escalation_level == 2


def test_escalated_task_is_picked_up_by_teammate_then_goes_to_leader(tmp_path: Path) -> None:
    brain = ScriptedBrain(["FAIL"])
    orchestrator, store = _setup(tmp_path, brain)
    task = _pass_task(agent_id=None)
    task.escalation_level = 2
    task.retry_count = 4
    store.add_task(task)

    outcome = asyncio.run(orchestrator.run_cycle("agent-2"))

    assert outcome.status == CycleStatus.ESCALATED
    assert outcome.escalation_level == 3
    stored = store.get_task("task-1")
    assert stored is not None
    assert stored.status == "in_review"
    assert stored.assigned_agent_id == "lead-1"


def test_success_after_retry_resets_escalation(tmp_path: Path) -> None:
    brain = ScriptedBrain(["FAIL", "PASS"])
    orchestrator, store = _setup(tmp_path, brain)
    store.add_task(_pass_task())

    first = asyncio.run(orchestrator.run_cycle("agent-1"))
    second = asyncio.run(orchestrator.run_cycle("agent-1"))

    assert first.status == CycleStatus.RETRIED
    assert second.status == CycleStatus.COMPLETED
    task = store.get_task("task-1")
    assert task is not None
    assert task.escalation_level == 0
    assert task.retry_count == 0


def test_failed_execution_result_is_retried(tmp_path: Path) -> None:
    failure = ExecutionResult.failure(
        "Claude Code timed out after 60s", metadata={"model_used": "sonnet"}
    )
    brain = ScriptedBrain([failure])
    orchestrator, store = _setup(tmp_path, brain)
    store.add_task(_pass_task())

    outcome = asyncio.run(orchestrator.run_cycle("agent-1"))

    assert outcome.status == CycleStatus.RETRIED
    assert outcome.validation is not None
    assert outcome.validation.failed_checks == ["execution"]
    task = store.get_task("task-1")
    assert task is not None
    assert task.last_failure_reason == "Claude Code timed out after 60s"


def test_non_retriable_execution_failure_escalates(tmp_path: Path) -> None:
    failure = ExecutionResult.failure("prompt rejected", retriable=False)
    orchestrator, store = _setup(tmp_path, ScriptedBrain([failure]))
    store.add_task(_pass_task())

    outcome = asyncio.run(orchestrator.run_cycle("agent-1"))

    assert outcome.status == CycleStatus.ESCALATED
    assert outcome.escalation_level == 2


def test_infrastructure_error_releases_task_and_propagates(tmp_path: Path) -> None:
    brain = ScriptedBrain([BackendProcessError("claude: not found", retriable=False)])
    orchestrator, store = _setup(tmp_path, brain)
    store.add_task(_pass_task())

    with pytest.raises(BackendProcessError):
        asyncio.run(orchestrator.run_cycle("agent-1"))

    task = store.get_task("task-1")
    assert task is not None
    assert task.status == "ready"
    assert task.escalation_level == 0


def test_second_cycle_for_same_agent_is_refused(tmp_path: Path) -> None:
    brain = ScriptedBrain(["PASS"])
    orchestrator, store = _setup(tmp_path, brain)
    store.add_task(_pass_task())

    async def _run() -> None:
        brain.gate = asyncio.Event()
        brain.entered = asyncio.Event()
        first = asyncio.create_task(orchestrator.run_cycle("agent-1"))
        await brain.entered.wait()
        with pytest.raises(CycleInProgressError):
            await orchestrator.run_cycle("agent-1")
        brain.gate.set()
        outcome = await first
        assert outcome.status == CycleStatus.COMPLETED

    asyncio.run(_run())

    assert len(brain.requests) == 1


def test_run_agents_executes_cycles_concurrently(tmp_path: Path) -> None:
    brain = ScriptedBrain(["PASS", "PASS"])
    orchestrator, store = _setup(tmp_path, brain)
    store.add_task(_pass_task("task-1", "agent-1"))
    store.add_task(_pass_task("task-2", "agent-2"))

    outcomes = asyncio.run(orchestrator.run_agents(["agent-1", "agent-2"]))

    assert [outcome.status for outcome in outcomes] == [CycleStatus.COMPLETED] * 2
    assert {task.status for task in store.get_tasks()} == {"completed"}


def test_budget_error_after_execution_releases_task(tmp_path: Path, monkeypatch) -> None:
    brain = ScriptedBrain(["PASS"])
    orchestrator, store = _setup(tmp_path, brain)
    store.add_task(_pass_task())

    async def _broken_budget(organization_id: str):
        raise HollonStateError("costs namespace unavailable")

    monkeypatch.setattr(store, "check_budget", _broken_budget)

    with pytest.raises(HollonStateError):
        asyncio.run(orchestrator.run_cycle("agent-1"))

    task = store.get_task("task-1")
    assert task is not None
    assert task.status == "ready"
    assert task.assigned_agent_id == "agent-1"
    agent = asyncio.run(store.get_agent("agent-1"))
    assert agent is not None and agent.status == "idle"


def test_unexpected_error_releases_task_and_propagates(tmp_path: Path) -> None:
    orchestrator, store = _setup(tmp_path, ScriptedBrain([RuntimeError("boom")]))
    store.add_task(_pass_task())

    with pytest.raises(RuntimeError, match="boom"):
        asyncio.run(orchestrator.run_cycle("agent-1"))

    task = store.get_task("task-1")
    assert task is not None
    assert task.status == "ready"


def test_teamless_task_keeps_escalating(tmp_path: Path) -> None:
    brain = ScriptedBrain(["FAIL"] * 6)
    orchestrator, store = _setup(tmp_path, brain)
    store.upsert_agent(AgentProfile(id="solo", name="Solo", organization_id="org-1"))
    store.add_task(
        Task(
            id="task-solo",
            title="Print PASS",
            organization_id="org-1",
            assigned_agent_id="solo",
            acceptance_criteria=["Output must output exactly 'PASS'"],
        )
    )

    statuses = [asyncio.run(orchestrator.run_cycle("solo")).status for _ in range(6)]

    assert statuses == [CycleStatus.RETRIED] * 3 + [CycleStatus.ESCALATED] * 2 + [
        CycleStatus.SKIPPED
    ]
    task = store.get_task("task-solo")
    assert task is not None
    assert task.escalation_level == 3
    assert task.status == "in_review"


def test_paused_agent_is_skipped_without_side_effects(tmp_path: Path) -> None:
    brain = ScriptedBrain(["PASS"])
    orchestrator, store = _setup(tmp_path, brain)
    store.add_task(_pass_task())
    asyncio.run(store.set_agent_status("agent-1", "paused"))

    outcome = asyncio.run(orchestrator.run_cycle("agent-1"))

    assert outcome.status == CycleStatus.SKIPPED
    assert outcome.reason == "agent paused"
    assert brain.requests == []
    task = store.get_task("task-1")
    assert task is not None and task.status == "ready"
    agent = asyncio.run(store.get_agent("agent-1"))
    assert agent is not None and agent.status == "paused"


def test_agent_is_working_during_cycle_and_idle_after(tmp_path: Path) -> None:
    brain = ScriptedBrain(["PASS"])
    orchestrator, store = _setup(tmp_path, brain)
    store.add_task(_pass_task())

    async def _run() -> str:
        brain.gate = asyncio.Event()
        brain.entered = asyncio.Event()
        cycle = asyncio.create_task(orchestrator.run_cycle("agent-1"))
        await brain.entered.wait()
        agent = await store.get_agent("agent-1")
        brain.gate.set()
        await cycle
        return agent.status if agent else ""

    assert asyncio.run(_run()) == "working"
    agent = asyncio.run(store.get_agent("agent-1"))
    assert agent is not None and agent.status == "idle"


def test_unknown_agent_is_an_error(tmp_path: Path) -> None:
    orchestrator, _ = _setup(tmp_path, ScriptedBrain([]))

    with pytest.raises(HollonStateError, match="Unknown agent"):
        asyncio.run(orchestrator.run_cycle("ghost"))
