from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable
from dataclasses import dataclass, field

from hollon.backends.cost import CHARS_PER_TOKEN
from hollon.prompts.layers import (
    MAX_KNOWLEDGE_ITEMS,
    extract_keywords,
    render_agent,
    render_knowledge,
    render_organization,
    render_role,
    render_task,
    render_team,
)
from hollon.state.base import AgentProfile, ContextStore, HollonStateError, Task

logger = logging.getLogger(__name__)

LAYER_SEPARATOR = "\n\n---\n\n"
TRUNCATION_MARKER = "\n...[truncated]"
LAYER_ORDER = ("organization", "team", "role", "agent", "knowledge", "task")
# The task layer is never on this list; it is cut only when it alone exceeds the budget.
TRUNCATION_ORDER = ("knowledge", "organization", "team", "agent", "role")


@dataclass(slots=True)
class ComposedPrompt:
    system_prompt: str
    user_prompt: str
    text: str
    estimated_tokens: int
    layers: dict[str, str] = field(default_factory=dict)
    truncated_layers: list[str] = field(default_factory=list)


def _joined_length(layers: dict[str, str]) -> int:
    present = [content for content in layers.values() if content]
    if not present:
        return 0
    return sum(len(content) for content in present) + len(LAYER_SEPARATOR) * (len(present) - 1)


def fit_to_budget(layers: dict[str, str], max_chars: int) -> tuple[dict[str, str], list[str]]:
    """Shrink layers until the merged prompt fits in `max_chars`.

    Returns the adjusted layers (same keys, same order) and the names of the
    layers that were truncated or dropped.
    """
    fitted = dict(layers)
    touched: list[str] = []
    for name in TRUNCATION_ORDER:
        overflow = _joined_length(fitted) - max_chars
        if overflow <= 0:
            return fitted, touched
        content = fitted.get(name, "")
        if not content:
            continue
        keep = len(content) - overflow
        if keep <= len(TRUNCATION_MARKER):
            fitted[name] = ""
        else:
            fitted[name] = content[: keep - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER
        touched.append(name)

    task = fitted.get("task", "")
    if _joined_length(fitted) > max_chars and len(task) > max_chars:
        keep = max(0, max_chars - len(TRUNCATION_MARKER))
        fitted["task"] = task[:keep] + TRUNCATION_MARKER
        touched.append("task")
    return fitted, touched


class PromptComposer:
    def __init__(
        self,
        context_store: ContextStore,
        *,
        max_prompt_chars: int = 32000,
        max_knowledge_chars: int = 8000,
        layer_timeout_seconds: float = 5.0,
    ) -> None:
        self.context_store = context_store
        self.max_prompt_chars = max_prompt_chars
        self.max_knowledge_chars = max_knowledge_chars
        self.layer_timeout_seconds = layer_timeout_seconds

    async def _bounded(self, name: str, fetch: Awaitable[str]) -> str:
        try:
            return await asyncio.wait_for(fetch, timeout=self.layer_timeout_seconds)
        except TimeoutError:
            logger.warning(
                "Prompt layer %s timed out after %.1fs; rendering empty",
                name,
                self.layer_timeout_seconds,
            )
        except HollonStateError as exc:
            logger.warning("Prompt layer %s unavailable: %s", name, exc)
        return ""

    async def _organization_layer(self, organization_id: str) -> str:
        return render_organization(await self.context_store.get_organization(organization_id))

    async def _team_layer(self, team_id: str | None) -> str:
        if not team_id:
            return ""
        return render_team(await self.context_store.get_team(team_id))

    async def _role_layer(self, role_id: str | None) -> str:
        if not role_id:
            return ""
        return render_role(await self.context_store.get_role(role_id))

    async def _agent_layer(self, agent: AgentProfile) -> str:
        return render_agent(agent)

    async def _knowledge_layer(self, organization_id: str, task: Task) -> str:
        keywords = extract_keywords(f"{task.title} {task.description}")
        if not keywords:
            return ""
        items = await self.context_store.find_knowledge(
            organization_id, keywords, MAX_KNOWLEDGE_ITEMS
        )
        logger.debug("Matched %s knowledge items for task %s", len(items), task.id)
        return render_knowledge(items, self.max_knowledge_chars)

    async def _task_layer(self, task: Task) -> str:
        return render_task(task)

    async def compose(self, agent: AgentProfile, task: Task) -> ComposedPrompt:
        organization_id = task.organization_id or agent.organization_id
        fetches = {
            "organization": self._organization_layer(organization_id),
            "team": self._team_layer(agent.team_id),
            "role": self._role_layer(agent.role_id),
            "agent": self._agent_layer(agent),
            "knowledge": self._knowledge_layer(organization_id, task),
            "task": self._task_layer(task),
        }
        rendered = await asyncio.gather(
            *(self._bounded(name, fetch) for name, fetch in fetches.items())
        )
        by_name = dict(zip(fetches, rendered))
        layers = {name: by_name[name] for name in LAYER_ORDER}

        layers, truncated = fit_to_budget(layers, self.max_prompt_chars)
        if truncated:
            logger.warning(
                "Prompt for task %s exceeded %s chars; truncated layers: %s",
                task.id,
                self.max_prompt_chars,
                ", ".join(truncated),
            )

        system_parts = [layers[name] for name in LAYER_ORDER[:-1] if layers[name]]
        system_prompt = LAYER_SEPARATOR.join(system_parts)
        user_prompt = layers["task"]
        text = LAYER_SEPARATOR.join([*system_parts, user_prompt] if user_prompt else system_parts)
        estimated_tokens = math.ceil(len(text) / CHARS_PER_TOKEN)
        logger.info(
            "Prompt composed for agent=%s task=%s: ~%s tokens, system=%s chars, user=%s chars",
            agent.id,
            task.id,
            estimated_tokens,
            len(system_prompt),
            len(user_prompt),
        )
        return ComposedPrompt(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            text=text,
            estimated_tokens=estimated_tokens,
            layers=layers,
            truncated_layers=truncated,
        )
