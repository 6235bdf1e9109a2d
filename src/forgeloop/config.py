"""Configuration loading and management."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from forgeloop.errors import ConfigurationError

# Load .env files
load_dotenv()

PROJECT_DIR = ".forgeloop"
USER_DIR_NAME = ".forgeloop"
CONFIG_FILE = "config.yaml"
ENV_PREFIX = "FORGELOOP"

DEFAULT_MAX_ITERATIONS = 50
DEFAULT_CHECKPOINT_INTERVAL = 5
DEFAULT_STYLE_GUIDE_INTERVAL = 5

CHECK_KINDS = ("test", "lint", "build", "format", "docs")


@dataclass(slots=True)
class WorkLoopConfig:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL
    style_guide_interval: int = DEFAULT_STYLE_GUIDE_INTERVAL
    style_guide_path: str | None = None
    style_guide_max_chars: int = 1000
    task_type: str = "IMPLEMENTATION"
    tier: str | None = None
    model: str | None = None


@dataclass(slots=True)
class VerificationConfig:
    test_commands: list[str] = field(default_factory=list)
    lint_commands: list[str] = field(default_factory=list)
    build_commands: list[str] = field(default_factory=list)
    format_commands: list[str] = field(default_factory=list)
    docs_commands: list[str] = field(default_factory=list)
    # Kinds missing here are required.
    required: dict[str, bool] = field(default_factory=dict)
    timeout: float = 600.0
    max_output_chars: int = 8000

    def commands_by_kind(self) -> dict[str, list[str]]:
        return {kind: list(getattr(self, f"{kind}_commands")) for kind in CHECK_KINDS}

    def is_required(self, kind: str) -> bool:
        return bool(self.required.get(kind, True))


@dataclass(slots=True)
class ProviderConfig:
    name: str
    backend: str = ""
    binary: str | None = None
    args: list[str] = field(default_factory=list)
    model: str = ""
    timeout: float | None = None
    env: dict[str, str] = field(default_factory=dict)
    dangerous: bool = False
    prompt_via_stdin: bool | None = None
    type: str | None = None
    error_patterns: dict[str, list[str]] = field(default_factory=dict)

    def as_spec(self) -> dict[str, Any]:
        spec = {f.name: getattr(self, f.name) for f in fields(self)}
        spec["backend"] = self.backend or self.name
        return spec


@dataclass(slots=True)
class RetryConfig:
    transient: dict[str, Any] = field(default_factory=dict)
    health_threshold: float = 50.0
    default_reset_seconds: float = 60.0
    # None waits for the earliest reset; a number caps the wait in seconds.
    max_rate_limit_wait: float | None = None
    circuit_failure_threshold: int = 5
    circuit_reset_timeout: float = 60.0
    circuit_success_threshold: int = 2


@dataclass(slots=True)
class ParallelConfig:
    max_concurrency: int = 3
    workspace_mode: str = "auto"  # auto | worktree | copy
    workspaces_root: str = f"{PROJECT_DIR}/workstreams"
    run_dir: str = f"{PROJECT_DIR}/runs"
    base_ref: str = "HEAD"
    keep_workspaces: bool = False
    delete_branches: bool = True


@dataclass(slots=True)
class SessionConfig:
    cancel_timeout: float = 30.0
    stuck_timeout: float = 120.0


@dataclass(slots=True)
class ForgeloopConfig:
    """Merged configuration from all sources.

    Priority: overrides > env vars > explicit file > project config > user config > defaults
    """

    working_directory: str = ""
    debug: bool = False
    log_json: bool = False
    work_loop: WorkLoopConfig = field(default_factory=WorkLoopConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    providers: list[ProviderConfig] = field(default_factory=list)
    retry: RetryConfig = field(default_factory=RetryConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @property
    def state_dir(self) -> Path:
        return Path(self.working_directory) / PROJECT_DIR

    def resolve(self, relative: str) -> Path:
        path = Path(relative)
        return path if path.is_absolute() else Path(self.working_directory) / path


def find_project_root(start: Path | None = None) -> Path | None:
    """Find the project root by looking for .forgeloop/ or .git/."""
    current = start or Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / PROJECT_DIR).exists():
            return parent
        if (parent / ".git").exists():
            return parent
    return None


def get_user_config_dir() -> Path:
    """Get the user-level config directory (~/.forgeloop/)."""
    return Path.home() / USER_DIR_NAME


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load a YAML config file, returning empty dict if not found."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError:
        return {}
    return data if isinstance(data, dict) else {}


def load_config(
    *,
    overrides: dict[str, Any] | None = None,
    working_dir: str | None = None,
    config_path: str | None = None,
    environ: dict[str, str] | None = None,
    include_user: bool = True,
) -> ForgeloopConfig:
    """Load configuration from all sources with proper priority.

    ``overrides`` accepts dotted keys, e.g. ``{"work_loop.max_iterations": 10}``.
    """
    env = os.environ if environ is None else environ
    working_directory = working_dir or os.getcwd()

    raw: dict[str, Any] = {}

    # 1. User-level config (~/.forgeloop/config.yaml)
    if include_user:
        _deep_merge(raw, load_yaml_config(get_user_config_dir() / CONFIG_FILE))

    # 2. Project-level config (.forgeloop/config.yaml)
    project_root = find_project_root(Path(working_directory))
    if project_root:
        _deep_merge(raw, load_yaml_config(project_root / PROJECT_DIR / CONFIG_FILE))

    # 3. Explicit config file
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        _deep_merge(raw, load_yaml_config(path))

    config = _from_raw(raw)
    config.working_directory = working_directory

    # 4. Environment variables
    _apply_env(config, env)

    # 5. Explicit overrides (CLI)
    for key, value in (overrides or {}).items():
        if value is not None:
            _apply_override(config, key, value)

    if not config.providers:
        name = env.get(f"{ENV_PREFIX}_PROVIDER", "claude")
        config.providers = [ProviderConfig(name=name, backend=name)]

    validate_config(config)
    return config


def validate_config(config: ForgeloopConfig) -> None:
    if config.work_loop.max_iterations < 1:
        raise ConfigurationError("work_loop.max_iterations must be >= 1")
    if config.work_loop.checkpoint_interval < 1:
        raise ConfigurationError("work_loop.checkpoint_interval must be >= 1")
    if config.parallel.max_concurrency < 1:
        raise ConfigurationError("parallel.max_concurrency must be >= 1")
    if config.parallel.workspace_mode not in ("auto", "worktree", "copy"):
        raise ConfigurationError(
            f"parallel.workspace_mode must be auto, worktree or copy, "
            f"got {config.parallel.workspace_mode!r}"
        )
    if config.session.cancel_timeout < 0:
        raise ConfigurationError("session.cancel_timeout must be >= 0")
    retry = config.retry
    if retry.max_rate_limit_wait is not None and retry.max_rate_limit_wait < 0:
        raise ConfigurationError("retry.max_rate_limit_wait must be >= 0")
    if retry.circuit_failure_threshold < 1 or retry.circuit_success_threshold < 1:
        raise ConfigurationError("retry circuit thresholds must be >= 1")
    if retry.circuit_reset_timeout <= 0:
        raise ConfigurationError("retry.circuit_reset_timeout must be > 0")
    names = [p.name for p in config.providers]
    if len(names) != len(set(names)):
        raise ConfigurationError(f"Duplicate provider names: {names}")


def _from_raw(raw: dict[str, Any]) -> ForgeloopConfig:
    def section(key: str) -> dict[str, Any]:
        value = raw.get(key, {})
        return value if isinstance(value, dict) else {}

    providers: list[ProviderConfig] = []
    raw_providers = raw.get("providers", [])
    if isinstance(raw_providers, list):
        for item in raw_providers:
            if isinstance(item, str):
                providers.append(ProviderConfig(name=item, backend=item))
            elif isinstance(item, dict) and item.get("name"):
                providers.append(ProviderConfig(**_pick(item, ProviderConfig)))

    verification_raw = section("verification")
    # Accept ``test: "pytest -q"`` shorthand next to ``test_commands: [...]``.
    for kind in CHECK_KINDS:
        short = verification_raw.get(kind)
        if short and f"{kind}_commands" not in verification_raw:
            verification_raw[f"{kind}_commands"] = [short] if isinstance(short, str) else list(short)

    return ForgeloopConfig(
        debug=bool(raw.get("debug", False)),
        log_json=bool(raw.get("log_json", False)),
        work_loop=WorkLoopConfig(**_pick(section("work_loop"), WorkLoopConfig)),
        verification=VerificationConfig(**_pick(verification_raw, VerificationConfig)),
        providers=providers,
        retry=RetryConfig(**_pick(section("retry"), RetryConfig)),
        parallel=ParallelConfig(**_pick(section("parallel"), ParallelConfig)),
        session=SessionConfig(**_pick(section("session"), SessionConfig)),
    )


_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "MAX_ITERATIONS": ("work_loop.max_iterations", int),
    "CHECKPOINT_INTERVAL": ("work_loop.checkpoint_interval", int),
    "STYLE_GUIDE": ("work_loop.style_guide_path", str),
    "MODEL": ("work_loop.model", str),
    "TIER": ("work_loop.tier", str),
    "MAX_CONCURRENCY": ("parallel.max_concurrency", int),
    "WORKSPACE_MODE": ("parallel.workspace_mode", str),
    "CANCEL_TIMEOUT": ("session.cancel_timeout", float),
    "STUCK_TIMEOUT": ("session.stuck_timeout", float),
    "VERIFY_TIMEOUT": ("verification.timeout", float),
    "MAX_RATE_LIMIT_WAIT": ("retry.max_rate_limit_wait", float),
}


def _apply_env(config: ForgeloopConfig, env: Any) -> None:
    for suffix, (dotted, cast) in _ENV_FIELDS.items():
        value = env.get(f"{ENV_PREFIX}_{suffix}")
        if value:
            try:
                _apply_override(config, dotted, cast(value))
            except ValueError as exc:
                raise ConfigurationError(f"Invalid {ENV_PREFIX}_{suffix}={value!r}") from exc
    if debug := env.get(f"{ENV_PREFIX}_DEBUG"):
        config.debug = debug.lower() in ("1", "true", "yes")
    if log_json := env.get(f"{ENV_PREFIX}_LOG_JSON"):
        config.log_json = log_json.lower() in ("1", "true", "yes")


def _apply_override(config: ForgeloopConfig, key: str, value: Any) -> None:
    target: Any = config
    *parents, attr = key.split(".")
    for part in parents:
        if not hasattr(target, part):
            raise ConfigurationError(f"Unknown config section: {key}")
        target = getattr(target, part)
    if not hasattr(target, attr):
        raise ConfigurationError(f"Unknown config key: {key}")
    setattr(target, attr, value)


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
