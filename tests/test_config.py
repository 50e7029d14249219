import tomllib
from pathlib import Path

from specpilot import __version__
from specpilot.config import SpecPilotConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "specpilot.toml"
    config = SpecPilotConfig.default()
    config.project.name = "specpilot-test"
    config.project.test_command = "npm test"
    config.loop.max_attempts = 5
    config.loop.command_timeout_seconds = 30.5
    config.loop.include_optional = False
    config.gateway.enabled = False
    config.gateway.port = 4100
    config.generator.primary = "codex"
    config.generator.fallback = "claude"
    config.generator.max_retries = 3
    config.state.max_backups = 4
    config.state.protected_paths = ["secrets/*"]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "specpilot-test"
    assert loaded.project.test_command == "npm test"
    assert loaded.loop.max_attempts == 5
    assert loaded.loop.command_timeout_seconds == 30.5
    assert loaded.loop.include_optional is False
    assert loaded.gateway.enabled is False
    assert loaded.gateway.port == 4100
    assert loaded.gateway.health_timeout_seconds == 2.0
    assert loaded.generator.primary == "codex"
    assert loaded.generator.fallback == "claude"
    assert loaded.generator.max_retries == 3
    assert loaded.state.max_backups == 4
    assert loaded.state.protected_paths == ["secrets/*"]


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.loop.max_attempts == 3
    assert config.gateway.port == 3000
    assert config.state.max_backups == 10
    assert config.generator.primary == "none"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(SpecPilotConfig.default())

    for section in ("[project]", "[loop]", "[gateway]", "[generator]", "[state]"):
        assert section in rendered
    assert "max_attempts = 3" in rendered
    assert "health_timeout_seconds = 2.0" in rendered
    assert "retry_backoff_seconds = 0.5" in rendered
    assert tomllib.loads(rendered)["gateway"]["port"] == 3000


def test_state_dir_is_resolved_against_repo_root(tmp_path: Path) -> None:
    config = SpecPilotConfig.default()
    assert config.state_dir(tmp_path) == tmp_path / ".specpilot"

    config.state.directory = str(tmp_path / "elsewhere")
    assert config.state_dir(Path("/unused")) == tmp_path / "elsewhere"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
