"""Configuration loading.

The orchestrator configuration is read once from YAML, validated into the
frozen models of shipgate.schemas.config and never mutated afterwards.

Environment overrides:
    SHIPGATE_LOG_LEVEL: Log level for configure_logging (default INFO).
    SHIPGATE_LOG_JSON: "1"/"true" to emit JSON logs.

Example:
    >>> config = load_config("shipgate.yaml")
    >>> [p.name for p in config.pipelines]
    ['checkout']
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, NamedTuple

import structlog
import yaml
from pydantic import ValidationError

from shipgate.errors import ConfigurationError
from shipgate.scanning.adapters import ADAPTERS
from shipgate.schemas.config import OrchestratorConfig
from shipgate.telemetry.tracing import traced

logger = structlog.get_logger(__name__)

_TRUTHY = frozenset({"1", "true", "yes", "on"})


class LoggingSettings(NamedTuple):
    """Logging settings resolved from the environment."""

    level: str
    json_output: bool


def logging_settings(environ: Mapping[str, str] | None = None) -> LoggingSettings:
    """Resolve SHIPGATE_LOG_LEVEL and SHIPGATE_LOG_JSON."""
    env: Mapping[str, str] = os.environ if environ is None else environ
    level = env.get("SHIPGATE_LOG_LEVEL", "INFO").upper()
    json_output = env.get("SHIPGATE_LOG_JSON", "").strip().lower() in _TRUTHY
    return LoggingSettings(level=level, json_output=json_output)


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        location = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


def parse_config(data: Any, source: str = "<memory>") -> OrchestratorConfig:
    """Validate already-parsed configuration data.

    Raises:
        ConfigurationError: If the data does not describe a valid
            configuration or names an unknown report format.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(source, "top level must be a mapping")
    try:
        config = OrchestratorConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(source, _format_validation_error(e)) from e

    for pipeline in config.pipelines:
        for task in (*pipeline.source_scans, *pipeline.image_scans):
            if task.report_format not in ADAPTERS:
                raise ConfigurationError(
                    source,
                    f"pipeline {pipeline.name} task {task.task_id}: "
                    f"unknown report_format {task.report_format!r} "
                    f"(known: {sorted(ADAPTERS)})",
                )
    return config


@traced(name="shipgate.config.load")
def load_config(path: Path | str) -> OrchestratorConfig:
    """Load and validate the orchestrator configuration from a YAML file.

    Raises:
        ConfigurationError: If the file cannot be read, parsed or validated.
    """
    config_path = Path(path)
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(str(config_path), f"cannot read file: {e.strerror}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(str(config_path), f"invalid YAML: {e}") from e

    config = parse_config(data, str(config_path))
    logger.debug(
        "config_loaded",
        path=str(config_path),
        pipelines=[p.name for p in config.pipelines],
    )
    return config


__all__: list[str] = ["LoggingSettings", "logging_settings", "parse_config", "load_config"]
