"""Configuration loader for hardenctl.

This module centralises the logic for reading the orchestrator's own settings
from multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``/etc/hardenctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``HARDENCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export HARDENCTL_WATCHDOG__MAX_RESTARTS=3
    export HARDENCTL_POLICY__ZERO_DOWNTIME_PREFERRED=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

These are *tool* settings. The desired-state document that describes what the
managed server should look like lives in the :mod:`hardenctl.config_store`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load hardenctl configuration. Install with "
        "`pip install hardenctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "HARDENCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServiceConfig:
    """The supervised database service."""

    name: str = "mongod"
    host: str = "127.0.0.1"
    port: int = 27017
    data_path: Path = Path("/var/lib/mongodb")
    systemctl_bin: str = "systemctl"
    unit_dir: Path = Path("/etc/systemd/system")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "data_path": str(self.data_path),
            "systemctl_bin": self.systemctl_bin,
            "unit_dir": str(self.unit_dir),
        }


@dataclass(frozen=True)
class PolicyConfig:
    """Reload/restart and timeout policy for the phase executor."""

    zero_downtime_preferred: bool = True
    warn_if_restart_required: bool = True
    restart_timeout: float = 60.0
    apply_timeout: float = 300.0
    health_poll_interval: float = 2.0
    continue_on_failure: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "zero_downtime_preferred": self.zero_downtime_preferred,
            "warn_if_restart_required": self.warn_if_restart_required,
            "restart_timeout": self.restart_timeout,
            "apply_timeout": self.apply_timeout,
            "health_poll_interval": self.health_poll_interval,
            "continue_on_failure": self.continue_on_failure,
        }


@dataclass(frozen=True)
class RollbackConfig:
    """Automatic rollback thresholds."""

    max_failed_steps: int = 3
    max_consecutive_failures: int = 3
    auto_level: str = "security"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_failed_steps": self.max_failed_steps,
            "max_consecutive_failures": self.max_consecutive_failures,
            "auto_level": self.auto_level,
        }


@dataclass(frozen=True)
class HistoryConfig:
    """Retention for configuration versions and snapshots."""

    max_versions: int = 20
    max_snapshots: int = 50

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_versions": self.max_versions, "max_snapshots": self.max_snapshots}


@dataclass(frozen=True)
class WatchdogConfig:
    """Supervisor loop tunables."""

    interval: float = 60.0
    max_restarts: int = 5
    backoff: str = "exponential"
    backoff_base: float = 5.0
    backoff_max: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "interval": self.interval,
            "max_restarts": self.max_restarts,
            "backoff": self.backoff,
            "backoff_base": self.backoff_base,
            "backoff_max": self.backoff_max,
        }


@dataclass(frozen=True)
class HealthConfig:
    """Thresholds used by the health verifier."""

    connect_timeout: float = 3.0
    disk_warn_percent: int = 85
    disk_fail_percent: int = 90
    memory_warn_percent: int = 90
    memory_fail_percent: int = 95

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "connect_timeout": self.connect_timeout,
            "disk_warn_percent": self.disk_warn_percent,
            "disk_fail_percent": self.disk_fail_percent,
            "memory_warn_percent": self.memory_warn_percent,
            "memory_fail_percent": self.memory_fail_percent,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for hardenctl."""

    config_file: Path
    desired_config: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    service: ServiceConfig
    policy: PolicyConfig
    rollback: RollbackConfig
    history: HistoryConfig
    watchdog: WatchdogConfig
    health: HealthConfig

    @property
    def history_dir(self) -> Path:
        """Directory holding numbered configuration versions."""
        return self.state_dir / "history"

    @property
    def snapshots_dir(self) -> Path:
        """Directory holding the snapshot index."""
        return self.state_dir / "snapshots"

    @property
    def run_state_file(self) -> Path:
        """Path of the durable run-state record."""
        return self.state_dir / "run-state.json"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "desired_config": str(self.desired_config),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "service": self.service.to_dict(),
            "policy": self.policy.to_dict(),
            "rollback": self.rollback.to_dict(),
            "history": self.history.to_dict(),
            "watchdog": self.watchdog.to_dict(),
            "health": self.health.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/hardenctl/config.yml",
    "desired_config": "/etc/hardenctl/desired.yml",
    "state_dir": "/var/lib/hardenctl",
    "logs_dir": "/var/log/hardenctl",
    "runtime_dir": "/run/hardenctl",
    "templates_dir": "/etc/hardenctl/templates",
    "lock_timeout": 0.0,
    "service": {
        "name": "mongod",
        "host": "127.0.0.1",
        "port": 27017,
        "data_path": "/var/lib/mongodb",
        "systemctl_bin": "systemctl",
        "unit_dir": "/etc/systemd/system",
    },
    "policy": {
        "zero_downtime_preferred": True,
        "warn_if_restart_required": True,
        "restart_timeout": 60.0,
        "apply_timeout": 300.0,
        "health_poll_interval": 2.0,
        "continue_on_failure": True,
    },
    "rollback": {
        "max_failed_steps": 3,
        "max_consecutive_failures": 3,
        "auto_level": "security",
    },
    "history": {
        "max_versions": 20,
        "max_snapshots": 50,
    },
    "watchdog": {
        "interval": 60.0,
        "max_restarts": 5,
        "backoff": "exponential",
        "backoff_base": 5.0,
        "backoff_max": 300.0,
    },
    "health": {
        "connect_timeout": 3.0,
        "disk_warn_percent": 85,
        "disk_fail_percent": 90,
        "memory_warn_percent": 90,
        "memory_fail_percent": 95,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("service", "policy", "rollback", "history", "watchdog", "health")
}
ALLOWED_BACKOFF_STRATEGIES = {"exponential", "fixed"}
ALLOWED_ROLLBACK_LEVELS = {"config", "security", "monitoring", "full"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    watchdog_map = _as_dict(raw.get("watchdog"), "watchdog")
    backoff = watchdog_map.get("backoff")
    if backoff is not None and str(backoff) not in ALLOWED_BACKOFF_STRATEGIES:
        allowed = ", ".join(sorted(ALLOWED_BACKOFF_STRATEGIES))
        raise ConfigError(f"Unsupported watchdog backoff '{backoff}'. Allowed: {allowed}.")

    rollback_map = _as_dict(raw.get("rollback"), "rollback")
    level = rollback_map.get("auto_level")
    if level is not None and str(level).lower() not in ALLOWED_ROLLBACK_LEVELS:
        allowed = ", ".join(sorted(ALLOWED_ROLLBACK_LEVELS))
        raise ConfigError(f"Unsupported rollback.auto_level '{level}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))
    lock_timeout = _expect_non_negative_float(
        raw.get("lock_timeout"), "lock_timeout", default=0.0
    )

    service_map = _as_dict(raw.get("service"), "service")
    port = _expect_int(service_map.get("port"), "service.port", default=27017)
    if not 0 < port < 65536:
        raise ConfigError(f"service.port must be between 1 and 65535. Got {port}.")
    service = ServiceConfig(
        name=_expect_str(service_map.get("name", "mongod"), "service.name"),
        host=_expect_str(service_map.get("host", "127.0.0.1"), "service.host"),
        port=port,
        data_path=_to_path(service_map.get("data_path", "/var/lib/mongodb")),
        systemctl_bin=str(service_map.get("systemctl_bin", "systemctl")),
        unit_dir=_to_path(service_map.get("unit_dir", "/etc/systemd/system")),
    )

    policy_map = _as_dict(raw.get("policy"), "policy")
    policy = PolicyConfig(
        zero_downtime_preferred=_expect_bool(
            policy_map.get("zero_downtime_preferred"),
            "policy.zero_downtime_preferred",
            default=True,
        ),
        warn_if_restart_required=_expect_bool(
            policy_map.get("warn_if_restart_required"),
            "policy.warn_if_restart_required",
            default=True,
        ),
        restart_timeout=_expect_positive_float(
            policy_map.get("restart_timeout"), "policy.restart_timeout", default=60.0
        ),
        apply_timeout=_expect_positive_float(
            policy_map.get("apply_timeout"), "policy.apply_timeout", default=300.0
        ),
        health_poll_interval=_expect_positive_float(
            policy_map.get("health_poll_interval"),
            "policy.health_poll_interval",
            default=2.0,
        ),
        continue_on_failure=_expect_bool(
            policy_map.get("continue_on_failure"),
            "policy.continue_on_failure",
            default=True,
        ),
    )

    rollback_map = _as_dict(raw.get("rollback"), "rollback")
    rollback = RollbackConfig(
        max_failed_steps=_expect_count(
            rollback_map.get("max_failed_steps"), "rollback.max_failed_steps", default=3
        ),
        max_consecutive_failures=_expect_count(
            rollback_map.get("max_consecutive_failures"),
            "rollback.max_consecutive_failures",
            default=3,
        ),
        auto_level=str(rollback_map.get("auto_level", "security")).lower(),
    )

    history_map = _as_dict(raw.get("history"), "history")
    history = HistoryConfig(
        max_versions=_expect_count(
            history_map.get("max_versions"), "history.max_versions", default=20, minimum=2
        ),
        max_snapshots=_expect_count(
            history_map.get("max_snapshots"), "history.max_snapshots", default=50, minimum=2
        ),
    )

    watchdog_map = _as_dict(raw.get("watchdog"), "watchdog")
    backoff_base = _expect_positive_float(
        watchdog_map.get("backoff_base"), "watchdog.backoff_base", default=5.0
    )
    backoff_max = _expect_positive_float(
        watchdog_map.get("backoff_max"), "watchdog.backoff_max", default=300.0
    )
    if backoff_max < backoff_base:
        raise ConfigError("watchdog.backoff_max must not be smaller than watchdog.backoff_base.")
    watchdog = WatchdogConfig(
        interval=_expect_positive_float(
            watchdog_map.get("interval"), "watchdog.interval", default=60.0
        ),
        max_restarts=_expect_count(
            watchdog_map.get("max_restarts"), "watchdog.max_restarts", default=5
        ),
        backoff=str(watchdog_map.get("backoff", "exponential")),
        backoff_base=backoff_base,
        backoff_max=backoff_max,
    )

    health_map = _as_dict(raw.get("health"), "health")
    health = HealthConfig(
        connect_timeout=_expect_positive_float(
            health_map.get("connect_timeout"), "health.connect_timeout", default=3.0
        ),
        disk_warn_percent=_expect_percent(
            health_map.get("disk_warn_percent"), "health.disk_warn_percent", default=85
        ),
        disk_fail_percent=_expect_percent(
            health_map.get("disk_fail_percent"), "health.disk_fail_percent", default=90
        ),
        memory_warn_percent=_expect_percent(
            health_map.get("memory_warn_percent"), "health.memory_warn_percent", default=90
        ),
        memory_fail_percent=_expect_percent(
            health_map.get("memory_fail_percent"), "health.memory_fail_percent", default=95
        ),
    )
    if health.disk_warn_percent > health.disk_fail_percent:
        raise ConfigError("health.disk_warn_percent must not exceed health.disk_fail_percent.")
    if health.memory_warn_percent > health.memory_fail_percent:
        raise ConfigError(
            "health.memory_warn_percent must not exceed health.memory_fail_percent."
        )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        desired_config=_to_path(raw.get("desired_config")),
        state_dir=state_dir,
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=lock_timeout,
        service=service,
        policy=policy,
        rollback=rollback,
        history=history,
        watchdog=watchdog,
        health=health,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_count(
    value: object | None,
    label: str,
    *,
    default: int,
    minimum: int = 1,
) -> int:
    count = _expect_int(value, label, default=default)
    if count < minimum:
        raise ConfigError(f"{label} must be at least {minimum}. Got {count}.")
    return count


def _expect_percent(value: object | None, label: str, *, default: int) -> int:
    percent = _expect_int(value, label, default=default)
    if not 0 < percent <= 100:
        raise ConfigError(f"{label} must be between 1 and 100. Got {percent}.")
    return percent


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "on", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "off", "0"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ConfigError(f"Expected {key} to resolve to a non-empty string. Got {value!r}.")


def _parse_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _parse_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _parse_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "HealthConfig",
    "HistoryConfig",
    "PolicyConfig",
    "RollbackConfig",
    "ServiceConfig",
    "WatchdogConfig",
    "load_config",
]
