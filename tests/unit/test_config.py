"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from forgeloop.config import (
    ForgeloopConfig,
    ProviderConfig,
    find_project_root,
    load_config,
    load_yaml_config,
    validate_config,
)
from forgeloop.errors import ConfigurationError


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Defaults and file sources
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_defaults(self, tmp_path: Path) -> None:
        config = load_config(working_dir=str(tmp_path), environ={})
        assert config.working_directory == str(tmp_path)
        assert config.work_loop.max_iterations == 50
        assert config.work_loop.checkpoint_interval == 5
        assert config.parallel.max_concurrency == 3
        assert config.session.cancel_timeout == 30.0
        assert [p.name for p in config.providers] == ["claude"]
        assert config.retry.max_rate_limit_wait is None
        assert config.retry.circuit_failure_threshold == 5

    def test_default_provider_from_env(self, tmp_path: Path) -> None:
        config = load_config(working_dir=str(tmp_path), environ={"FORGELOOP_PROVIDER": "gemini"})
        assert config.providers[0].name == "gemini"
        assert config.providers[0].backend == "gemini"

    def test_project_config(self, tmp_path: Path) -> None:
        _write(tmp_path / ".forgeloop" / "config.yaml", (
            "work_loop:\n"
            "  max_iterations: 12\n"
            "verification:\n"
            "  test: pytest -q\n"
            "  lint_commands: [ruff check .]\n"
            "providers:\n"
            "  - claude\n"
            "  - name: local\n"
            "    backend: generic\n"
            "    binary: my-agent\n"
            "    args: [--yes]\n"
        ))
        sub = tmp_path / "pkg"
        sub.mkdir()

        config = load_config(working_dir=str(sub), environ={})

        assert config.work_loop.max_iterations == 12
        assert config.verification.test_commands == ["pytest -q"]
        assert config.verification.lint_commands == ["ruff check ."]
        assert [p.name for p in config.providers] == ["claude", "local"]
        local = config.providers[1]
        assert local.binary == "my-agent"
        assert local.args == ["--yes"]

    def test_user_config_is_lowest_priority(self, tmp_path: Path) -> None:
        _write(Path.home() / ".forgeloop" / "config.yaml", (
            "work_loop:\n  max_iterations: 7\n  checkpoint_interval: 2\n"
        ))
        _write(tmp_path / ".forgeloop" / "config.yaml", "work_loop:\n  max_iterations: 9\n")

        config = load_config(working_dir=str(tmp_path), environ={})
        assert config.work_loop.max_iterations == 9
        assert config.work_loop.checkpoint_interval == 2

        isolated = load_config(working_dir=str(tmp_path), environ={}, include_user=False)
        assert isolated.work_loop.checkpoint_interval == 5

    def test_explicit_file_overrides_project(self, tmp_path: Path) -> None:
        _write(tmp_path / ".forgeloop" / "config.yaml", "work_loop:\n  max_iterations: 9\n")
        explicit = _write(tmp_path / "ci.yaml", "work_loop:\n  max_iterations: 3\n")
        config = load_config(working_dir=str(tmp_path), config_path=str(explicit), environ={})
        assert config.work_loop.max_iterations == 3

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(working_dir=str(tmp_path), config_path=str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        _write(tmp_path / ".forgeloop" / "config.yaml", "work_loop: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(working_dir=str(tmp_path), environ={})


# ---------------------------------------------------------------------------
# Environment and overrides
# ---------------------------------------------------------------------------


class TestEnvAndOverrides:
    def test_env_vars(self, tmp_path: Path) -> None:
        config = load_config(
            working_dir=str(tmp_path),
            environ={
                "FORGELOOP_MAX_ITERATIONS": "4",
                "FORGELOOP_CANCEL_TIMEOUT": "2.5",
                "FORGELOOP_WORKSPACE_MODE": "copy",
                "FORGELOOP_DEBUG": "true",
            },
        )
        assert config.work_loop.max_iterations == 4
        assert config.session.cancel_timeout == 2.5
        assert config.parallel.workspace_mode == "copy"
        assert config.debug is True

    def test_env_reads_process_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("FORGELOOP_MAX_CONCURRENCY", "8")
        config = load_config(working_dir=str(tmp_path))
        assert config.parallel.max_concurrency == 8

    def test_invalid_env_value(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="FORGELOOP_MAX_ITERATIONS"):
            load_config(working_dir=str(tmp_path), environ={"FORGELOOP_MAX_ITERATIONS": "many"})

    def test_overrides_beat_env(self, tmp_path: Path) -> None:
        config = load_config(
            working_dir=str(tmp_path),
            environ={"FORGELOOP_MAX_ITERATIONS": "4"},
            overrides={"work_loop.max_iterations": 20, "work_loop.model": None},
        )
        assert config.work_loop.max_iterations == 20
        assert config.work_loop.model is None

    def test_unknown_override_key(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Unknown config"):
            load_config(working_dir=str(tmp_path), environ={}, overrides={"work_loop.speed": 1})


# ---------------------------------------------------------------------------
# Validation and helpers
# ---------------------------------------------------------------------------


class TestValidation:
    def test_rejects_zero_iterations(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="max_iterations"):
            load_config(working_dir=str(tmp_path), environ={}, overrides={"work_loop.max_iterations": 0})

    def test_rejects_unknown_workspace_mode(self) -> None:
        config = ForgeloopConfig()
        config.parallel.workspace_mode = "docker"
        with pytest.raises(ConfigurationError, match="workspace_mode"):
            validate_config(config)

    def test_rate_limit_wait_cap_from_env(self, tmp_path: Path) -> None:
        config = load_config(working_dir=str(tmp_path), environ={"FORGELOOP_MAX_RATE_LIMIT_WAIT": "90"})
        assert config.retry.max_rate_limit_wait == 90.0

    def test_rejects_negative_rate_limit_wait(self) -> None:
        config = ForgeloopConfig()
        config.retry.max_rate_limit_wait = -1
        with pytest.raises(ConfigurationError, match="max_rate_limit_wait"):
            validate_config(config)

    def test_rejects_bad_circuit_settings(self) -> None:
        config = ForgeloopConfig()
        config.retry.circuit_failure_threshold = 0
        with pytest.raises(ConfigurationError, match="circuit thresholds"):
            validate_config(config)
        config.retry.circuit_failure_threshold = 5
        config.retry.circuit_reset_timeout = 0
        with pytest.raises(ConfigurationError, match="circuit_reset_timeout"):
            validate_config(config)

    def test_rejects_duplicate_providers(self) -> None:
        config = ForgeloopConfig(providers=[ProviderConfig(name="a"), ProviderConfig(name="a")])
        with pytest.raises(ConfigurationError, match="Duplicate"):
            validate_config(config)

    def test_provider_spec_defaults_backend_to_name(self) -> None:
        spec = ProviderConfig(name="codex").as_spec()
        assert spec["backend"] == "codex"
        assert spec["name"] == "codex"

    def test_load_yaml_missing_and_scalar(self, tmp_path: Path) -> None:
        assert load_yaml_config(tmp_path / "missing.yaml") == {}
        scalar = _write(tmp_path / "scalar.yaml", "just a string\n")
        assert load_yaml_config(scalar) == {}

    def test_find_project_root(self, tmp_path: Path) -> None:
        (tmp_path / ".git").mkdir()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_project_root(nested) == tmp_path

    def test_resolve_relative_to_working_directory(self, tmp_path: Path) -> None:
        config = ForgeloopConfig(working_directory=str(tmp_path))
        assert config.resolve(".forgeloop/runs") == tmp_path / ".forgeloop" / "runs"
        assert config.resolve("/abs/path") == Path("/abs/path")
        assert config.state_dir == tmp_path / ".forgeloop"
