"""
Orchestration settings.

Settings are resolved once per invocation from built-in defaults, an optional
YAML file, and the environment, then passed by value into every component.
"""

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ValidationError

DEFAULT_CONFIG_FILE = "strata.yaml"


@dataclass(frozen=True)
class Settings:
    """Every orchestration knob. Immutable once resolved."""
    project_name: str = "strata"
    region: str = "us-east-1"
    profile: Optional[str] = None
    templates_bucket: Optional[str] = None
    templates_prefix: str = "templates"
    template_dir: str = "infrastructure"
    buildspec_dir: str = "buildspecs"
    output_dir: str = "."
    state_dir: str = ".strata"
    rollback_on_failure: bool = True
    poll_interval: float = 15.0
    create_timeout: float = 3600.0
    update_timeout: float = 3600.0
    delete_timeout: float = 1800.0
    drain_timeout: float = 90.0
    drain_timeout_instances: float = 300.0
    instance_drain_timeout: float = 180.0
    orphan_wait: float = 120.0
    recovery_attempts: int = 3
    diagnostic_events: int = 10
    secret_recovery_days: int = 7
    vpc_cidr: str = "10.0.0.0/16"
    custom_domain: str = ""
    certificate_arn: str = ""

    def replace(self, **changes: Any) -> "Settings":
        """Return a copy with ``changes`` applied, ignoring None values."""
        changes = {key: value for key, value in changes.items() if value is not None}
        return dataclasses.replace(self, **changes)

    def as_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


FIELD_TYPES = {f.name: f.type for f in dataclasses.fields(Settings)}

# Environment variable -> settings field. Later entries win.
ENV_VARS = {
    "AWS_DEFAULT_REGION": "region",
    "AWS_PROFILE": "profile",
    "STRATA_PROJECT_NAME": "project_name",
    "STRATA_REGION": "region",
    "STRATA_PROFILE": "profile",
    "STRATA_TEMPLATES_BUCKET": "templates_bucket",
    "STRATA_TEMPLATES_PREFIX": "templates_prefix",
    "STRATA_TEMPLATE_DIR": "template_dir",
    "STRATA_OUTPUT_DIR": "output_dir",
    "STRATA_HOME": "state_dir",
    "STRATA_ROLLBACK_ON_FAILURE": "rollback_on_failure",
    "STRATA_POLL_INTERVAL": "poll_interval",
    "STRATA_VPC_CIDR": "vpc_cidr",
    "STRATA_CUSTOM_DOMAIN": "custom_domain",
    "STRATA_CERTIFICATE_ARN": "certificate_arn",
}


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw config or environment value to the field's type."""
    kind = FIELD_TYPES[name]
    if value is None:
        return None
    if kind in (bool, "bool"):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"{name}: expected a boolean, got '{value}'")
    if kind in (int, "int"):
        return int(value)
    if kind in (float, "float"):
        return float(value)
    return str(value)


def read_config_file(path: Path) -> Dict[str, Any]:
    """
    Read a YAML settings file.

    Raises:
        ValidationError: If the file is not a mapping or has unknown keys
    """
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Config file {path} is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError(f"Config file {path} must contain a mapping")

    unknown = sorted(set(data) - set(FIELD_TYPES))
    if unknown:
        raise ValidationError(
            f"Unknown keys in config file {path}",
            problems=[f"Unknown setting '{key}'" for key in unknown],
        )
    return data


def _apply(values: Dict[str, Any], raw: Mapping[str, Any], source: str) -> None:
    problems = []
    for name, value in raw.items():
        try:
            values[name] = _coerce(name, value)
        except (TypeError, ValueError) as e:
            problems.append(f"{source}: invalid value for {name}: {e}")
    if problems:
        raise ValidationError("Invalid settings", problems=problems)


def load_settings(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """
    Resolve settings from defaults, config file, environment and overrides.

    Args:
        config_path: Explicit YAML file; falls back to STRATA_CONFIG, then
            ./strata.yaml when present
        environ: Environment mapping, defaults to os.environ
        overrides: Highest-precedence values, usually CLI flags. None
            values are ignored.

    Returns:
        Settings: Resolved settings
    """
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    path = config_path or environ.get("STRATA_CONFIG")
    if path:
        if not Path(path).exists():
            raise ValidationError(f"Config file not found: {path}")
        _apply(values, read_config_file(Path(path)), str(path))
    elif Path(DEFAULT_CONFIG_FILE).exists():
        _apply(values, read_config_file(Path(DEFAULT_CONFIG_FILE)), DEFAULT_CONFIG_FILE)

    from_env = {}
    for var, name in ENV_VARS.items():
        if environ.get(var):
            from_env[name] = environ[var]
    _apply(values, from_env, "environment")

    if overrides:
        _apply(values, {k: v for k, v in overrides.items() if v is not None}, "option")

    return Settings(**values)
