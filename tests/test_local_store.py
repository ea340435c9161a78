import asyncio
import json
from pathlib import Path

import pytest

from hollon.state.base import (
    AgentProfile,
    CostRecord,
    Decision,
    HollonStateError,
    KnowledgeItem,
    OrganizationContext,
    Task,
    TaskClaimError,
)
from hollon.state.local import MAX_EVENT_HISTORY, LocalStateStore


def _store(tmp_path: Path) -> LocalStateStore:
    store = LocalStateStore(tmp_path)
    store.upsert_agent(
        AgentProfile(id="agent-1", name="One", organization_id="org-1", team_id="team-1")
    )
    return store


def _cost(cents: float) -> CostRecord:
    return CostRecord(
        organization_id="org-1",
        agent_id="agent-1",
        task_id="task-1",
        model="sonnet",
        input_tokens=10,
        output_tokens=5,
        cost_cents=cents,
    )


def test_namespaces_are_stored_as_envelopes(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path)
    store.set_json("metrics", {"count": 1})
    first_revision = store.get_envelope("metrics")["revision"]

    store.update_json("metrics", lambda payload: {"count": payload["count"] + 1})

    on_disk = json.loads((tmp_path / ".hollon" / "state" / "metrics.json").read_text("utf-8"))
    assert on_disk["schema_version"] == LocalStateStore.SCHEMA_VERSION
    assert on_disk["data"] == {"count": 2}
    assert on_disk["revision"] > first_revision
    assert not (tmp_path / ".hollon" / "state" / ".lock").exists()


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(HollonStateError):
        LocalStateStore(tmp_path).get_json("secrets")


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path)
    store.set_json("metrics", {"count": 1})
    revision = store.get_envelope("metrics")["revision"]
    store.set_json("metrics", {"count": 2})

    with pytest.raises(HollonStateError, match="Concurrent state update"):
        store.set_json("metrics", {"count": 3}, expected_revision=revision)


def test_corrupt_file_falls_back_to_default(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path)
    (store.state_dir / "decisions.json").write_text("{not json", encoding="utf-8")

    assert store.get_decisions() == []


def test_pull_prefers_assigned_then_priority_then_age(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task(Task(id="t-team-p1", title="a", organization_id="org-1", team_id="team-1", priority="P1", created_at="2026-01-01T00:00:00+00:00"))
    store.add_task(Task(id="t-mine-p3", title="b", organization_id="org-1", assigned_agent_id="agent-1", priority="P3", created_at="2026-01-01T00:00:00+00:00"))
    store.add_task(Task(id="t-mine-p2-new", title="c", organization_id="org-1", assigned_agent_id="agent-1", priority="P2", created_at="2026-01-03T00:00:00+00:00"))
    store.add_task(Task(id="t-mine-p2-old", title="d", organization_id="org-1", assigned_agent_id="agent-1", priority="P2", created_at="2026-01-02T00:00:00+00:00"))

    first = asyncio.run(store.pull_next_task("agent-1"))

    assert first is not None
    assert first.id == "t-mine-p2-old"


def test_pull_falls_back_to_unassigned_team_tasks(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task(Task(id="other-team", title="a", organization_id="org-1", team_id="team-2", priority="P1"))
    store.add_task(Task(id="blocked", title="b", organization_id="org-1", team_id="team-1", status="blocked"))
    store.add_task(Task(id="team-task", title="c", organization_id="org-1", team_id="team-1", priority="P4"))

    task = asyncio.run(store.pull_next_task("agent-1"))

    assert task is not None
    assert task.id == "team-task"
    assert asyncio.run(store.pull_next_task("unknown-agent")) is None


def test_claim_is_exclusive(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task(Task(id="task-1", title="a", organization_id="org-1", team_id="team-1"))

    claimed = asyncio.run(store.claim_task("task-1", "agent-1"))

    assert claimed.status == "in_progress"
    assert claimed.assigned_agent_id == "agent-1"
    with pytest.raises(TaskClaimError):
        asyncio.run(store.claim_task("task-1", "agent-2"))


def test_duplicate_task_ids_are_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task(Task(id="task-1", title="a", organization_id="org-1"))

    with pytest.raises(HollonStateError, match="already exists"):
        store.add_task(Task(id="task-1", title="b", organization_id="org-1"))


def test_complete_clears_escalation_and_release_returns_to_ready(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task(Task(id="task-1", title="a", organization_id="org-1", assigned_agent_id="agent-1"))
    store.add_task(Task(id="task-2", title="b", organization_id="org-1", assigned_agent_id="agent-1"))

    async def _run() -> None:
        await store.claim_task("task-1", "agent-1")
        await store.mark_failed(
            "task-1",
            status="ready",
            assigned_agent_id="agent-1",
            escalation_level=1,
            retry_count=1,
            reason="wrong output",
        )
        await store.claim_task("task-1", "agent-1")
        await store.mark_complete("task-1", {"output": "PASS"})
        await store.claim_task("task-2", "agent-1")
        await store.release_task("task-2")

    asyncio.run(_run())

    completed = store.get_task("task-1")
    released = store.get_task("task-2")
    assert completed is not None and released is not None
    assert completed.status == "completed"
    assert completed.result == {"output": "PASS"}
    assert completed.escalation_level == 0
    assert completed.retry_count == 0
    assert completed.last_failure_reason is None
    assert completed.completed_at is not None
    assert released.status == "ready"
    assert released.assigned_agent_id == "agent-1"


def test_budget_thresholds(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert_organization(
        OrganizationContext(id="org-1", name="Acme", daily_budget_cents=100.0)
    )

    async def _spend(cents: float):
        await store.record_cost(_cost(cents))
        return await store.check_budget("org-1")

    fine = asyncio.run(_spend(50.0))
    warned = asyncio.run(_spend(35.0))
    stopped = asyncio.run(_spend(15.0))

    assert fine.within_limit is True and fine.warning is False
    assert warned.within_limit is True and warned.warning is True
    assert stopped.within_limit is False
    assert stopped.daily_spent_cents == 100.0
    assert "Daily budget exceeded" in (stopped.reason or "")


def test_budget_without_limits_is_always_within(tmp_path: Path) -> None:
    store = _store(tmp_path)
    asyncio.run(store.record_cost(_cost(1_000_000.0)))

    budget = asyncio.run(store.check_budget("org-1"))

    assert budget.within_limit is True
    assert budget.daily_limit_cents is None


def test_knowledge_matches_keywords_within_organization(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_knowledge(KnowledgeItem(id="k1", title="Login", content="session handling", organization_id="org-1"))
    store.add_knowledge(KnowledgeItem(id="k2", title="Billing", content="invoices", organization_id="org-1"))
    store.add_knowledge(KnowledgeItem(id="k3", title="Login", content="other org", organization_id="org-2"))

    found = asyncio.run(store.find_knowledge("org-1", ["session", "login"], 10))

    assert [item.id for item in found] == ["k1"]


def test_decisions_and_backend_events(tmp_path: Path) -> None:
    store = _store(tmp_path)
    asyncio.run(store.log_decision(Decision(kind="escalation", organization_id="org-1", summary="x")))
    for _ in range(MAX_EVENT_HISTORY + 5):
        store.record_backend_event({"event": "backend_fallback_start"})

    metrics = store.get_metrics()
    assert store.get_decisions()[0]["kind"] == "escalation"
    assert len(metrics["backend_events"]) == MAX_EVENT_HISTORY
    assert metrics["backend_event_counts"]["backend_fallback_start"] == MAX_EVENT_HISTORY + 5
