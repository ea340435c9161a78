from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

import click

from hollon.backends import (
    BackendExecutionError,
    ClaudeCodeBackend,
    CostCalculator,
    ProcessRunner,
)
from hollon.config import HollonConfig, load_config, save_config
from hollon.escalation import EscalationEngine
from hollon.orchestrator import CycleOutcome, Orchestrator
from hollon.prompts import PromptComposer
from hollon.quality import QualityGate
from hollon.state import (
    AgentProfile,
    HollonStateError,
    KnowledgeItem,
    LocalStateStore,
    OrganizationContext,
    RoleContext,
    Task,
    TeamContext,
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: HollonConfig
    state: LocalStateStore
    backend: ClaudeCodeBackend
    orchestrator: Orchestrator


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _state_root(root: Path, config: HollonConfig) -> Path:
    state_root = Path(config.state.root)
    if not state_root.is_absolute():
        state_root = root / state_root
    return state_root


def _build_backend(config: HollonConfig, state: LocalStateStore) -> ClaudeCodeBackend:
    return ClaudeCodeBackend(
        config.brain.binary,
        primary_model=config.brain.primary_model,
        fallback_model=config.brain.fallback_model,
        runner=ProcessRunner(kill_grace_seconds=max(0.0, float(config.brain.kill_grace_seconds))),
        cost_calculator=CostCalculator(
            cost_per_input_token_cents=config.brain.cost_per_input_token_cents,
            cost_per_output_token_cents=config.brain.cost_per_output_token_cents,
        ),
        event_hook=state.record_backend_event,
    )


def _build_orchestrator(
    config: HollonConfig, state: LocalStateStore, backend: ClaudeCodeBackend
) -> Orchestrator:
    quality_gate = QualityGate(
        state,
        runner=backend.runner,
        min_output_chars=config.quality.min_output_chars,
        lint_command=config.quality.lint_command,
        type_check_command=config.quality.type_check_command,
        test_command=config.quality.test_command,
        command_timeout_seconds=config.quality.command_timeout_seconds,
        single_execution_budget_ratio=config.quality.single_execution_budget_ratio,
        terminal_checks=config.quality.terminal_checks,
    )
    return Orchestrator(
        task_store=state,
        context_store=state,
        brain=backend,
        composer=PromptComposer(
            state,
            max_prompt_chars=config.prompt.max_prompt_chars,
            max_knowledge_chars=config.prompt.max_knowledge_chars,
            layer_timeout_seconds=config.prompt.layer_timeout_seconds,
        ),
        quality_gate=quality_gate,
        escalation=EscalationEngine(state, state, max_retries=config.escalation.max_retries),
        cost_tracker=state,
        decision_log=state,
        timeout_seconds=max(5.0, float(config.brain.timeout_seconds)),
    )


def _load_runtime(ctx: click.Context, config_value: str) -> Runtime:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    _configure_logging(ctx.obj.get("log_level") or config.logging.level)
    state = LocalStateStore(_state_root(root, config))
    backend = _build_backend(config, state)
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        state=state,
        backend=backend,
        orchestrator=_build_orchestrator(config, state, backend),
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Overrides [logging] level from the config file.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Hollon execution core CLI."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command("init")
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
def init_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    state = LocalStateStore(_state_root(root, config))

    click.echo(f"Initialized Hollon in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {state.state_dir}")


@cli.command("add-org")
@click.argument("organization_id")
@click.option("--name", default=None)
@click.option("--description", default="")
@click.option("--daily-budget-cents", type=float, default=None)
@click.option("--monthly-budget-cents", type=float, default=None)
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def add_org_command(
    ctx: click.Context,
    organization_id: str,
    name: str | None,
    description: str,
    daily_budget_cents: float | None,
    monthly_budget_cents: float | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(ctx, config_value)
    runtime.state.upsert_organization(
        OrganizationContext(
            id=organization_id,
            name=name or organization_id,
            description=description,
            daily_budget_cents=daily_budget_cents,
            monthly_budget_cents=monthly_budget_cents,
        )
    )
    click.echo(f"Saved organization {organization_id}")


@cli.command("add-team")
@click.argument("team_id")
@click.option("--name", default=None)
@click.option("--description", default="")
@click.option("--leader", "leader_id", default=None)
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def add_team_command(
    ctx: click.Context,
    team_id: str,
    name: str | None,
    description: str,
    leader_id: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(ctx, config_value)
    runtime.state.upsert_team(
        TeamContext(id=team_id, name=name or team_id, description=description, leader_id=leader_id)
    )
    click.echo(f"Saved team {team_id}")


@cli.command("add-agent")
@click.argument("agent_id")
@click.option("--org", "organization_id", required=True)
@click.option("--name", default=None)
@click.option("--team", "team_id", default=None)
@click.option("--role", "role_id", default=None)
@click.option("--system-prompt", default="")
@click.option("--disallow-tool", "disallowed_tools", multiple=True)
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def add_agent_command(
    ctx: click.Context,
    agent_id: str,
    organization_id: str,
    name: str | None,
    team_id: str | None,
    role_id: str | None,
    system_prompt: str,
    disallowed_tools: tuple[str, ...],
    config_value: str,
) -> None:
    runtime = _load_runtime(ctx, config_value)
    runtime.state.upsert_agent(
        AgentProfile(
            id=agent_id,
            name=name or agent_id,
            organization_id=organization_id,
            team_id=team_id,
            role_id=role_id,
            system_prompt=system_prompt,
            disallowed_tools=list(disallowed_tools),
        )
    )
    click.echo(f"Saved agent {agent_id}")


@cli.command("add-role")
@click.argument("role_id")
@click.option("--name", default=None)
@click.option("--description", default="")
@click.option("--responsibility", "responsibilities", multiple=True)
@click.option("--capability", "capabilities", multiple=True)
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def add_role_command(
    ctx: click.Context,
    role_id: str,
    name: str | None,
    description: str,
    responsibilities: tuple[str, ...],
    capabilities: tuple[str, ...],
    config_value: str,
) -> None:
    runtime = _load_runtime(ctx, config_value)
    runtime.state.upsert_role(
        RoleContext(
            id=role_id,
            name=name or role_id,
            description=description,
            responsibilities=list(responsibilities),
            capabilities=list(capabilities),
        )
    )
    click.echo(f"Saved role {role_id}")


@cli.command("add-knowledge")
@click.argument("title")
@click.option("--org", "organization_id", required=True)
@click.option("--id", "item_id", default=None)
@click.option("--content", default=None, help="Inline content; use --file to read it from disk.")
@click.option("--file", "content_file", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--tag", "tags", multiple=True)
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def add_knowledge_command(
    ctx: click.Context,
    title: str,
    organization_id: str,
    item_id: str | None,
    content: str | None,
    content_file: str | None,
    tags: tuple[str, ...],
    config_value: str,
) -> None:
    if content_file is not None:
        content = Path(content_file).read_text(encoding="utf-8")
    if not content:
        raise click.ClickException("Knowledge content is required (--content or --file).")
    runtime = _load_runtime(ctx, config_value)
    item = KnowledgeItem(
        id=item_id or f"knowledge-{uuid4().hex[:8]}",
        title=title,
        content=content,
        organization_id=organization_id,
        tags=list(tags),
    )
    runtime.state.add_knowledge(item)
    click.echo(f"Saved knowledge {item.id}: {item.title}")


def _set_agent_status(ctx: click.Context, config_value: str, agent_id: str, status: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    try:
        asyncio.run(runtime.state.set_agent_status(agent_id, status))
    except HollonStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Agent {agent_id} is {status}")


@cli.command("pause")
@click.argument("agent_id")
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def pause_command(ctx: click.Context, agent_id: str, config_value: str) -> None:
    _set_agent_status(ctx, config_value, agent_id, "paused")


@cli.command("resume")
@click.argument("agent_id")
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def resume_command(ctx: click.Context, agent_id: str, config_value: str) -> None:
    _set_agent_status(ctx, config_value, agent_id, "idle")


@cli.command("add-task")
@click.argument("title")
@click.option("--org", "organization_id", required=True)
@click.option("--id", "task_id", default=None)
@click.option("--description", default="")
@click.option("--team", "team_id", default=None)
@click.option("--agent", "agent_id", default=None)
@click.option(
    "--priority", type=click.Choice(["P1", "P2", "P3", "P4"]), default="P3", show_default=True
)
@click.option("--criterion", "criteria", multiple=True)
@click.option("--file", "affected_files", multiple=True)
@click.option("--workdir", "working_directory", default=None)
@click.option("--expected-output", default=None)
@click.option("--output-pattern", default=None)
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def add_task_command(
    ctx: click.Context,
    title: str,
    organization_id: str,
    task_id: str | None,
    description: str,
    team_id: str | None,
    agent_id: str | None,
    priority: str,
    criteria: tuple[str, ...],
    affected_files: tuple[str, ...],
    working_directory: str | None,
    expected_output: str | None,
    output_pattern: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(ctx, config_value)
    task = Task(
        id=task_id or f"task-{uuid4().hex[:8]}",
        title=title,
        organization_id=organization_id,
        description=description,
        team_id=team_id,
        assigned_agent_id=agent_id,
        priority=priority,
        acceptance_criteria=list(criteria),
        affected_files=list(affected_files),
        working_directory=working_directory,
        expected_output=expected_output,
        output_pattern=output_pattern,
    )
    try:
        runtime.state.add_task(task)
    except HollonStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Added {task.id} ({task.priority}): {task.title}")


def _outcome_payload(agent_id: str, outcome: CycleOutcome | BaseException) -> dict[str, Any]:
    if isinstance(outcome, BaseException):
        return {"agent_id": agent_id, "status": "error", "error": str(outcome)}
    return outcome.to_dict()


@cli.command("cycle")
@click.argument("agent_ids", nargs=-1, required=True)
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def cycle_command(ctx: click.Context, agent_ids: tuple[str, ...], config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    try:
        outcomes = asyncio.run(runtime.orchestrator.run_agents(list(agent_ids)))
    except (BackendExecutionError, HollonStateError) as exc:
        raise click.ClickException(str(exc)) from exc

    payload = [
        _outcome_payload(agent_id, outcome) for agent_id, outcome in zip(agent_ids, outcomes)
    ]
    _echo_json(payload)
    failed = [item["agent_id"] for item in payload if item["status"] == "error"]
    if failed:
        raise click.ClickException(f"Cycle failed for: {', '.join(failed)}")


@cli.command("health")
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def health_command(ctx: click.Context, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    healthy = asyncio.run(runtime.backend.health_check())
    _echo_json({"binary": runtime.config.brain.binary, "healthy": healthy})
    if not healthy:
        raise click.ClickException(f"Brain provider '{runtime.config.brain.binary}' is unavailable.")


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="hollon.toml", show_default=True)
@click.pass_context
def status_command(ctx: click.Context, verbose: bool, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    tasks = runtime.state.get_tasks()
    counts: dict[str, int] = {}
    for task in tasks:
        counts[task.status] = counts.get(task.status, 0) + 1
    metrics = runtime.state.get_metrics()
    payload: dict[str, Any] = {
        "tasks": counts,
        "requires_human": [task.id for task in tasks if task.requires_human],
        "cost_records": len(runtime.state.get_cost_records()),
        "decisions": len(runtime.state.get_decisions()),
        "backend_event_counts": metrics.get("backend_event_counts", {}),
    }
    if verbose:
        payload["task_details"] = [
            {
                "id": task.id,
                "title": task.title,
                "status": task.status,
                "priority": task.priority,
                "assigned_agent_id": task.assigned_agent_id,
                "escalation_level": task.escalation_level,
                "retry_count": task.retry_count,
                "last_failure_reason": task.last_failure_reason,
            }
            for task in tasks
        ]
    _echo_json(payload)
