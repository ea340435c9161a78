import tomllib
from pathlib import Path

from hollon import __version__
from hollon.config import HollonConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "hollon.toml"
    config = HollonConfig.default()
    config.brain.binary = "/opt/claude/bin/claude"
    config.brain.fallback_model = "sonnet"
    config.brain.timeout_seconds = 120.0
    config.prompt.max_prompt_chars = 12000
    config.quality.test_command = "python -m pytest -q"
    config.quality.terminal_checks = ["cost_within_budget", "tests"]
    config.quality.single_execution_budget_ratio = 0.25
    config.escalation.max_retries = 5
    config.state.root = "var"
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.brain.binary == "/opt/claude/bin/claude"
    assert loaded.brain.primary_model == "sonnet"
    assert loaded.brain.fallback_model == "sonnet"
    assert loaded.brain.timeout_seconds == 120.0
    assert loaded.prompt.max_prompt_chars == 12000
    assert loaded.prompt.max_knowledge_chars == 8000
    assert loaded.quality.test_command == "python -m pytest -q"
    assert loaded.quality.terminal_checks == ["cost_within_budget", "tests"]
    assert loaded.quality.single_execution_budget_ratio == 0.25
    assert loaded.escalation.max_retries == 5
    assert loaded.state.root == "var"
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.brain.primary_model == "sonnet"
    assert config.brain.fallback_model == "haiku"
    assert config.escalation.max_retries == 3
    assert config.quality.terminal_checks == ["cost_within_budget"]


def test_toml_dump_keeps_float_fields_as_floats() -> None:
    rendered = dumps_toml(HollonConfig.default())
    data = tomllib.loads(rendered)

    for section in ("[brain]", "[prompt]", "[quality]", "[escalation]", "[state]", "[logging]"):
        assert section in rendered
    assert isinstance(data["brain"]["timeout_seconds"], float)
    assert isinstance(data["quality"]["single_execution_budget_ratio"], float)
    assert data["quality"]["lint_command"] == ""


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
