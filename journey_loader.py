# journey_loader.py
"""
Loading of journey definitions and run configuration from JSON or YAML files.

Every failure (missing file, unparsable document, schema violation) surfaces as a
ConfigurationError so callers can abort before any virtual user starts.
"""
import json
from pathlib import Path
from typing import Any, Dict, Mapping, Union

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from journey_runner import (
    ConfigurationError,
    JourneyDefinition,
    RunConfig,
    StartRequest,
    logger,
)

PathLike = Union[str, Path]


def _describe_validation_error(kind: str, err: ValidationError) -> str:
    problems = []
    for error in err.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg')}")
    return f"Invalid {kind}: " + "; ".join(problems)


def read_document(path: PathLike) -> Any:
    """Parses a JSON (.json) or YAML (anything else) file into plain Python data."""
    doc_path = Path(path)
    try:
        text = doc_path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigurationError(f"File not found: '{doc_path}'") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read '{doc_path}': {e}") from e

    try:
        if doc_path.suffix.lower() == ".json":
            return json.loads(text)
        return YAML(typ="safe").load(text)
    except (json.JSONDecodeError, YAMLError) as e:
        raise ConfigurationError(f"Cannot parse '{doc_path}': {e}") from e


def parse_journey_definition(data: Any) -> JourneyDefinition:
    """Accepts the journey itself or a document wrapping it under 'journey'."""
    if isinstance(data, Mapping) and "journey" in data and "steps" not in data:
        data = data["journey"]
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Journey definition must be a mapping, got {type(data).__name__}")
    try:
        return JourneyDefinition.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigurationError(_describe_validation_error("journey definition", e)) from e


def parse_run_config(data: Any) -> RunConfig:
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Run configuration must be a mapping, got {type(data).__name__}")
    try:
        return RunConfig.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigurationError(_describe_validation_error("run configuration", e)) from e


def parse_start_request(data: Any) -> StartRequest:
    """Validates a combined {config, journey} document."""
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Start request must be a mapping, got {type(data).__name__}")
    missing = [key for key in ("config", "journey") if key not in data]
    if missing:
        raise ConfigurationError(f"Start request is missing required section(s): {', '.join(missing)}")
    return StartRequest(
        config=parse_run_config(data["config"]),
        journey=parse_journey_definition(data["journey"]),
    )


def load_journey_definition(path: PathLike) -> JourneyDefinition:
    journey = parse_journey_definition(read_document(path))
    logger.info(f"Loaded journey '{journey.companyName}' ({len(journey.steps)} steps) from {path}")
    return journey


def load_run_config(path: PathLike, overrides: Dict[str, Any] = None) -> RunConfig:
    data = read_document(path) or {}
    if isinstance(data, Mapping) and "config" in data:
        data = data["config"]
    if overrides and isinstance(data, Mapping):
        data = {**data, **overrides}
    return parse_run_config(data)


def load_start_request(path: PathLike) -> StartRequest:
    return parse_start_request(read_document(path))
