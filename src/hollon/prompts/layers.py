from __future__ import annotations

import re

from hollon.state.base import (
    AgentProfile,
    KnowledgeItem,
    OrganizationContext,
    RoleContext,
    Task,
    TeamContext,
)

KEYWORD_PATTERN = re.compile(r"[a-z0-9_]+")
KEYWORD_MIN_LENGTH = 4
MAX_KEYWORDS = 10
MAX_KNOWLEDGE_ITEMS = 10
KNOWLEDGE_ELLIPSIS = "..."


def extract_keywords(text: str) -> list[str]:
    keywords: list[str] = []
    for word in KEYWORD_PATTERN.findall(text.lower()):
        if len(word) < KEYWORD_MIN_LENGTH or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) == MAX_KEYWORDS:
            break
    return keywords


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _budget_line(label: str, cents: float | None) -> str:
    if cents is None:
        return f"- {label}: unlimited"
    return f"- {label}: ${cents / 100:.2f}"


def render_organization(organization: OrganizationContext | None) -> str:
    if organization is None:
        return ""
    parts = [f"# Organization: {organization.name}"]
    if organization.description:
        parts.append(organization.description)
    settings = [
        "Organization Settings:",
        _budget_line("Daily Cost Limit", organization.daily_budget_cents),
        _budget_line("Monthly Cost Limit", organization.monthly_budget_cents),
    ]
    parts.append("\n".join(settings))
    if organization.guidelines:
        parts.append("## Guidelines:\n" + _bullets(organization.guidelines))
    parts.append(
        f"You are part of {organization.name}. "
        "Keep the organization's cost limits and policies in mind."
    )
    return "\n\n".join(parts)


def render_team(team: TeamContext | None) -> str:
    if team is None:
        return ""
    parts = [f"# Team: {team.name}"]
    if team.description:
        parts.append(team.description)
    parts.append(
        f'You are a member of the "{team.name}" team. Collaborate effectively with your teammates.'
    )
    return "\n\n".join(parts)


def render_role(role: RoleContext | None) -> str:
    if role is None:
        return ""
    parts = [f"# Your Role: {role.name}"]
    if role.description:
        parts.append(role.description)
    if role.responsibilities:
        parts.append("## Role-Specific Guidelines:\n" + _bullets(role.responsibilities))
    if role.capabilities:
        parts.append("## Your Capabilities:\n" + _bullets(role.capabilities))
    return "\n\n".join(parts)


def render_agent(agent: AgentProfile) -> str:
    parts = [f"# Identity: {agent.name}"]
    if agent.system_prompt:
        parts.append(agent.system_prompt.strip())
    else:
        parts.append(f"You are {agent.name}.")
    if agent.capabilities:
        parts.append("## Specialties:\n" + _bullets(agent.capabilities))
    return "\n\n".join(parts)


def trim_knowledge(items: list[KnowledgeItem], max_chars: int) -> list[tuple[str, str]]:
    """Keep documents in order until `max_chars` of content is used up."""
    trimmed: list[tuple[str, str]] = []
    total = 0
    for item in items[:MAX_KNOWLEDGE_ITEMS]:
        if total >= max_chars:
            break
        remaining = max_chars - total
        content = item.content
        if len(content) > remaining:
            content = content[:remaining] + KNOWLEDGE_ELLIPSIS
        trimmed.append((item.title, content))
        total += len(content)
    return trimmed


def render_knowledge(items: list[KnowledgeItem], max_chars: int) -> str:
    documents = trim_knowledge(items, max_chars)
    if not documents:
        return ""
    rendered = "\n\n".join(
        f"### Document {index}: {title}\n\n{content}"
        for index, (title, content) in enumerate(documents, start=1)
    )
    return (
        "# Relevant Context & Memories\n\n"
        "The following documents may be relevant to your current task:\n\n"
        f"{rendered}"
    )


def render_task(task: Task) -> str:
    parts = [f"# Your Task: {task.title}"]
    if task.description:
        parts.append(task.description)
    if task.acceptance_criteria:
        parts.append("## Acceptance Criteria:\n" + _bullets(task.acceptance_criteria))
    if task.affected_files:
        parts.append("## Affected Files:\n" + _bullets(task.affected_files))
    if task.retry_count > 0 and task.last_failure_reason:
        parts.append(
            f"## IMPORTANT: Previous Attempt Failed (Retry #{task.retry_count})\n\n"
            "Your previous attempt to complete this task failed with the following error:\n\n"
            f"```\n{task.last_failure_reason}\n```\n\n"
            "Analyze this error carefully and fix it before submitting your answer."
        )
    return "\n\n".join(parts)
