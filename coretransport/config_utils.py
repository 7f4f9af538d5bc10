"""Helper utilities for loading and normalising solver configuration."""
from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from pydantic import ValidationError
from ruamel.yaml import YAML

from .errors import ConfigurationError
from .schema import SolverConfig

logger = logging.getLogger(__name__)


def parse_override_value(raw: str) -> Any:
    """Parse a CLI override value into a Python object."""

    text = raw.strip()
    lower = text.lower()
    if lower in {"true", "false"}:
        return lower == "true"
    if lower in {"none", "null"}:
        return None
    if lower in {"inf", "+inf", "infinity"}:
        return float("inf")
    if lower in {"-inf", "-infinity"}:
        return float("-inf")
    try:
        return int(text)
    except ValueError:
        try:
            return float(text)
        except ValueError:
            pass
    if text.startswith("[") and text.endswith("]"):
        return [parse_override_value(item) for item in text[1:-1].split(",") if item.strip()]
    if (text.startswith('"') and text.endswith('"')) or (text.startswith("'") and text.endswith("'")):
        return text[1:-1]
    return text


def apply_overrides_dict(payload: Dict[str, Any], overrides: Sequence[str]) -> Dict[str, Any]:
    """Apply dotted-path ``section.key=value`` overrides to a configuration mapping."""

    if not overrides:
        return payload
    for item in overrides:
        key, sep, value_str = item.partition("=")
        if not sep:
            raise ConfigurationError(f"Invalid override '{item}'; expected path=value")
        parts = [segment for segment in key.strip().split(".") if segment]
        if not parts:
            raise ConfigurationError(f"Invalid override '{item}'; empty path")
        target: Any = payload
        for segment in parts[:-1]:
            if not isinstance(target, dict):
                raise ConfigurationError(f"Cannot traverse into non-mapping for override '{item}' at '{segment}'")
            if target.get(segment) is None:
                target[segment] = {}
            target = target[segment]
        if not isinstance(target, dict):
            raise ConfigurationError(f"Cannot set override '{item}'; target is not a mapping")
        target[parts[-1]] = parse_override_value(value_str)
        logger.debug("apply_overrides_dict: %s", item)
    return payload


def build_config(data: Optional[Mapping[str, Any]] = None, overrides: Optional[Sequence[str]] = None) -> SolverConfig:
    """Validate a configuration mapping, converting pydantic failures to :class:`ConfigurationError`."""

    payload: Dict[str, Any] = dict(data or {})
    if overrides:
        payload = apply_overrides_dict(payload, overrides)
    try:
        return SolverConfig(**payload)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid solver configuration: {exc}") from exc


def load_config(path: Path, overrides: Optional[Sequence[str]] = None) -> SolverConfig:
    """Load a YAML configuration file into a :class:`SolverConfig` instance."""

    yaml = YAML(typ="safe")
    source_path = Path(path).resolve()
    with source_path.open("r", encoding="utf-8") as fh:
        data = yaml.load(fh)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{source_path}: configuration root must be a mapping")
    cfg = build_config(data, overrides)
    logger.info("load_config: loaded %s", source_path)
    return cfg


def configure_logging(level: int, suppress_warnings: bool = False) -> None:
    """Configure root logging and optionally silence Python warnings."""

    logging.basicConfig(level=level)
    root = logging.getLogger()
    root.setLevel(level)
    if suppress_warnings:
        warnings.filterwarnings("ignore")
    logging.captureWarnings(True)


__all__ = [
    "parse_override_value",
    "apply_overrides_dict",
    "build_config",
    "load_config",
    "configure_logging",
]
