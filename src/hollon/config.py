from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class BrainConfig:
    binary: str = "claude"
    primary_model: str = "sonnet"
    fallback_model: str = "haiku"
    timeout_seconds: float = 300.0
    kill_grace_seconds: float = 5.0
    cost_per_input_token_cents: float = 300.0
    cost_per_output_token_cents: float = 1500.0


@dataclass(slots=True)
class PromptConfig:
    max_prompt_chars: int = 32000
    max_knowledge_chars: int = 8000
    layer_timeout_seconds: float = 5.0


@dataclass(slots=True)
class QualityConfig:
    min_output_chars: int = 1
    lint_command: str = ""
    type_check_command: str = ""
    test_command: str = ""
    command_timeout_seconds: float = 300.0
    single_execution_budget_ratio: float = 0.1
    terminal_checks: list[str] = field(default_factory=lambda: ["cost_within_budget"])


@dataclass(slots=True)
class EscalationConfig:
    max_retries: int = 3


@dataclass(slots=True)
class StateConfig:
    root: str = "."


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevelName = "INFO"


@dataclass(slots=True)
class HollonConfig:
    brain: BrainConfig = field(default_factory=BrainConfig)
    prompt: PromptConfig = field(default_factory=PromptConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> HollonConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> HollonConfig:
        return cls(
            brain=BrainConfig(**data.get("brain", {})),
            prompt=PromptConfig(**data.get("prompt", {})),
            quality=QualityConfig(**data.get("quality", {})),
            escalation=EscalationConfig(**data.get("escalation", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "brain": {
                "binary": self.brain.binary,
                "primary_model": self.brain.primary_model,
                "fallback_model": self.brain.fallback_model,
                "timeout_seconds": self.brain.timeout_seconds,
                "kill_grace_seconds": self.brain.kill_grace_seconds,
                "cost_per_input_token_cents": self.brain.cost_per_input_token_cents,
                "cost_per_output_token_cents": self.brain.cost_per_output_token_cents,
            },
            "prompt": {
                "max_prompt_chars": self.prompt.max_prompt_chars,
                "max_knowledge_chars": self.prompt.max_knowledge_chars,
                "layer_timeout_seconds": self.prompt.layer_timeout_seconds,
            },
            "quality": {
                "min_output_chars": self.quality.min_output_chars,
                "lint_command": self.quality.lint_command,
                "type_check_command": self.quality.type_check_command,
                "test_command": self.quality.test_command,
                "command_timeout_seconds": self.quality.command_timeout_seconds,
                "single_execution_budget_ratio": self.quality.single_execution_budget_ratio,
                "terminal_checks": list(self.quality.terminal_checks),
            },
            "escalation": {
                "max_retries": self.escalation.max_retries,
            },
            "state": {
                "root": self.state.root,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered or rendered == "-0":
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: HollonConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["brain", "prompt", "quality", "escalation", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> HollonConfig:
    if not path.exists():
        return HollonConfig.default()
    return HollonConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: HollonConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
