from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from hollon.state.base import (
    AGENT_STATUSES,
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
    utcnow_iso,
)

logger = logging.getLogger(__name__)

BUDGET_WARNING_RATIO = 0.8
BUDGET_STOP_RATIO = 1.0
MAX_EVENT_HISTORY = 200


class StateConflictError(HollonStateError):
    """Raised when a namespace changed between read and write."""


class LocalStateStore(TaskStore, ContextStore, CostTracker, DecisionLog):
    """JSON-file implementation of every collaborator interface.

    Each namespace lives in `<root>/.hollon/state/<namespace>.json` wrapped in
    an envelope carrying `schema_version`, `revision` and `updated_at`. Writes
    take an exclusive lock file and check the revision read beforehand. The
    async collaborator methods run their file I/O in worker threads.
    """

    NAMESPACES = {"tasks", "agents", "contexts", "knowledge", "costs", "decisions", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.state_dir = self.root / ".hollon" / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in LocalStateStore.NAMESPACES:
            raise HollonStateError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise HollonStateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt state file %s", path)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        raw = self._read_raw_json(namespace)
        if isinstance(raw, dict) and {"schema_version", "revision", "data"} <= raw.keys():
            return {
                "schema_version": int(raw.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw.get("revision") or 1),
                "updated_at": raw.get("updated_at") or utcnow_iso(),
                "data": raw.get("data", default_value),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": default_value if raw is None else raw,
        }

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace)
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateConflictError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateConflictError as exc:
                last_error = exc
                time.sleep(0.01)
        raise HollonStateError(str(last_error) if last_error else "State update failed.")

    # Tasks

    def _task_payloads(self) -> list[dict[str, Any]]:
        payload = self.get_json("tasks", default={"tasks": []})
        items = payload.get("tasks", []) if isinstance(payload, dict) else []
        return [item for item in items if isinstance(item, dict)]

    def get_tasks(self) -> list[Task]:
        tasks: list[Task] = []
        for item in self._task_payloads():
            try:
                tasks.append(Task.from_dict(item))
            except HollonStateError as exc:
                logger.warning("Skipping malformed task %s: %s", item.get("id"), exc)
        return tasks

    def get_task(self, task_id: str) -> Task | None:
        for task in self.get_tasks():
            if task.id == task_id:
                return task
        return None

    def add_task(self, task: Task) -> Task:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"tasks": []}
            items = result.setdefault("tasks", [])
            if any(isinstance(item, dict) and item.get("id") == task.id for item in items):
                raise HollonStateError(f"Task already exists: {task.id}")
            items.append(task.to_dict())
            return result

        self.update_json("tasks", _updater, default={"tasks": []})
        return task

    def _modify_task(self, task_id: str, change: Callable[[Task], None]) -> Task:
        changed: list[Task] = []

        def _updater(payload: Any) -> dict[str, Any]:
            changed.clear()
            result = payload if isinstance(payload, dict) else {"tasks": []}
            items = result.setdefault("tasks", [])
            for index, item in enumerate(items):
                if isinstance(item, dict) and item.get("id") == task_id:
                    task = Task.from_dict(item)
                    change(task)
                    task.updated_at = utcnow_iso()
                    items[index] = task.to_dict()
                    changed.append(task)
                    return result
            raise HollonStateError(f"Unknown task: {task_id}")

        self.update_json("tasks", _updater, default={"tasks": []})
        return changed[0]

    async def pull_next_task(self, agent_id: str) -> Task | None:
        agent = await self.get_agent(agent_id)
        tasks = await asyncio.to_thread(self.get_tasks)
        ready = [task for task in tasks if task.status == "ready"]
        assigned = [task for task in ready if task.assigned_agent_id == agent_id]
        if not assigned and agent is not None and agent.team_id:
            assigned = [
                task
                for task in ready
                if task.assigned_agent_id is None
                and task.team_id == agent.team_id
                and task.organization_id == agent.organization_id
            ]
        if not assigned:
            return None
        assigned.sort(key=lambda task: (task.priority_rank, task.created_at))
        return assigned[0]

    async def claim_task(self, task_id: str, agent_id: str) -> Task:
        def _claim(task: Task) -> None:
            if task.status != "ready":
                raise TaskClaimError(f"Task {task_id} is {task.status}, not ready")
            if task.assigned_agent_id not in (None, agent_id):
                raise TaskClaimError(
                    f"Task {task_id} is assigned to {task.assigned_agent_id}, not {agent_id}"
                )
            task.status = "in_progress"
            task.assigned_agent_id = agent_id

        return await asyncio.to_thread(self._modify_task, task_id, _claim)

    async def mark_complete(self, task_id: str, result: dict[str, Any]) -> Task:
        def _complete(task: Task) -> None:
            task.status = "completed"
            task.result = result
            task.completed_at = utcnow_iso()
            task.escalation_level = 0
            task.retry_count = 0
            task.last_failure_reason = None
            task.requires_human = False

        return await asyncio.to_thread(self._modify_task, task_id, _complete)

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
        def _fail(task: Task) -> None:
            task.status = status
            task.assigned_agent_id = assigned_agent_id
            task.escalation_level = escalation_level
            task.retry_count = retry_count
            task.last_failure_reason = reason
            task.requires_human = requires_human
            if team_id is not None:
                task.team_id = team_id

        return await asyncio.to_thread(self._modify_task, task_id, _fail)

    async def release_task(self, task_id: str) -> None:
        def _release(task: Task) -> None:
            if task.status == "in_progress":
                task.status = "ready"

        await asyncio.to_thread(self._modify_task, task_id, _release)

    # Contexts

    def _agents(self) -> dict[str, Any]:
        payload = self.get_json("agents", default={"agents": {}})
        agents = payload.get("agents", {}) if isinstance(payload, dict) else {}
        return agents if isinstance(agents, dict) else {}

    def upsert_agent(self, agent: AgentProfile) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"agents": {}}
            result.setdefault("agents", {})[agent.id] = agent.to_dict()
            return result

        self.update_json("agents", _updater, default={"agents": {}})

    async def set_agent_status(self, agent_id: str, status: str) -> None:
        if status not in AGENT_STATUSES:
            raise HollonStateError(f"Unknown agent status: {status}")

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"agents": {}}
            entry = result.setdefault("agents", {}).get(agent_id)
            if not isinstance(entry, dict):
                raise HollonStateError(f"Unknown agent: {agent_id}")
            entry["status"] = status
            return result

        await asyncio.to_thread(self.update_json, "agents", _updater, {"agents": {}})

    def _context_entry(self, kind: str, entry_id: str) -> dict[str, Any] | None:
        payload = self.get_json("contexts", default={})
        section = payload.get(kind, {}) if isinstance(payload, dict) else {}
        entry = section.get(entry_id) if isinstance(section, dict) else None
        return entry if isinstance(entry, dict) else None

    def _upsert_context(self, kind: str, entry_id: str, entry: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            result.setdefault(kind, {})[entry_id] = entry
            return result

        self.update_json("contexts", _updater, default={})

    def upsert_organization(self, organization: OrganizationContext) -> None:
        self._upsert_context("organizations", organization.id, organization.to_dict())

    def upsert_team(self, team: TeamContext) -> None:
        self._upsert_context("teams", team.id, team.to_dict())

    def upsert_role(self, role: RoleContext) -> None:
        self._upsert_context("roles", role.id, role.to_dict())

    def add_knowledge(self, item: KnowledgeItem) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"items": []}
            items = [
                existing
                for existing in result.get("items", [])
                if isinstance(existing, dict) and existing.get("id") != item.id
            ]
            items.append(item.to_dict())
            result["items"] = items
            return result

        self.update_json("knowledge", _updater, default={"items": []})

    async def get_agent(self, agent_id: str) -> AgentProfile | None:
        entry = (await asyncio.to_thread(self._agents)).get(agent_id)
        return AgentProfile.from_dict(entry) if isinstance(entry, dict) else None

    async def get_organization(self, organization_id: str) -> OrganizationContext | None:
        entry = await asyncio.to_thread(self._context_entry, "organizations", organization_id)
        return OrganizationContext.from_dict(entry) if entry else None

    async def get_team(self, team_id: str) -> TeamContext | None:
        entry = await asyncio.to_thread(self._context_entry, "teams", team_id)
        return TeamContext.from_dict(entry) if entry else None

    async def get_role(self, role_id: str) -> RoleContext | None:
        entry = await asyncio.to_thread(self._context_entry, "roles", role_id)
        return RoleContext.from_dict(entry) if entry else None

    async def find_knowledge(
        self, organization_id: str, keywords: list[str], limit: int
    ) -> list[KnowledgeItem]:
        if not keywords or limit <= 0:
            return []
        payload = await asyncio.to_thread(self.get_json, "knowledge", {"items": []})
        items = payload.get("items", []) if isinstance(payload, dict) else []
        matches: list[KnowledgeItem] = []
        for entry in items:
            if not isinstance(entry, dict):
                continue
            item = KnowledgeItem.from_dict(entry)
            if item.organization_id not in (None, organization_id):
                continue
            haystack = " ".join([item.title, item.content, *item.tags]).lower()
            if any(keyword in haystack for keyword in keywords):
                matches.append(item)
                if len(matches) >= limit:
                    break
        return matches

    # Costs

    def get_cost_records(self) -> list[dict[str, Any]]:
        payload = self.get_json("costs", default={"records": []})
        records = payload.get("records", []) if isinstance(payload, dict) else []
        return [record for record in records if isinstance(record, dict)]

    async def record_cost(self, record: CostRecord) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"records": []}
            result.setdefault("records", []).append(record.to_dict())
            return result

        await asyncio.to_thread(self.update_json, "costs", _updater, {"records": []})

    async def check_budget(self, organization_id: str) -> BudgetCheck:
        organization = await self.get_organization(organization_id)
        now = datetime.now(UTC)
        today = now.date().isoformat()
        month = today[:7]
        daily_spent = 0.0
        monthly_spent = 0.0
        for record in await asyncio.to_thread(self.get_cost_records):
            if record.get("organization_id") != organization_id:
                continue
            recorded_at = str(record.get("recorded_at", ""))
            cost = float(record.get("cost_cents") or 0.0)
            if recorded_at.startswith(month):
                monthly_spent += cost
            if recorded_at.startswith(today):
                daily_spent += cost

        daily_limit = organization.daily_budget_cents if organization else None
        monthly_limit = organization.monthly_budget_cents if organization else None
        within_limit = True
        warning = False
        reasons: list[str] = []
        for label, spent, limit in (
            ("Daily", daily_spent, daily_limit),
            ("Monthly", monthly_spent, monthly_limit),
        ):
            if not limit or limit <= 0:
                continue
            ratio = spent / limit
            if ratio >= BUDGET_STOP_RATIO:
                within_limit = False
                reasons.append(f"{label} budget exceeded: {spent:.2f}/{limit:.2f} cents")
            elif ratio >= BUDGET_WARNING_RATIO:
                warning = True
                reasons.append(f"{label} budget at {ratio:.0%}: {spent:.2f}/{limit:.2f} cents")

        if warning and within_limit:
            logger.warning("Organization %s: %s", organization_id, "; ".join(reasons))
        return BudgetCheck(
            within_limit=within_limit,
            daily_spent_cents=round(daily_spent, 6),
            daily_limit_cents=daily_limit,
            monthly_spent_cents=round(monthly_spent, 6),
            monthly_limit_cents=monthly_limit,
            warning=warning,
            reason="; ".join(reasons) or None,
        )

    # Decisions and metrics

    def get_decisions(self) -> list[dict[str, Any]]:
        payload = self.get_json("decisions", default={"decisions": []})
        decisions = payload.get("decisions", []) if isinstance(payload, dict) else []
        return [decision for decision in decisions if isinstance(decision, dict)]

    async def log_decision(self, decision: Decision) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"decisions": []}
            result.setdefault("decisions", []).append(decision.to_dict())
            return result

        await asyncio.to_thread(self.update_json, "decisions", _updater, {"decisions": []})

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def record_backend_event(self, event: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            history = metrics.setdefault("backend_events", [])
            history.append({**event, "at": utcnow_iso()})
            metrics["backend_events"] = history[-MAX_EVENT_HISTORY:]
            counts = metrics.setdefault("backend_event_counts", {})
            name = str(event.get("event", "unknown"))
            counts[name] = int(counts.get(name, 0)) + 1
            return metrics

        self.update_json("metrics", _updater, default={})
