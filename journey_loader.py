# journey_loader.py
"""
Loading of journey and profile documents from JSON or YAML files.

A loaded journey has its `baseUrl` and `defaults` resolved against the
environment namespace (`{{env.NAME}}`) and its own `variables`, and is
rejected with JourneyStructureError when any branch, onSuccess or onFailure
target does not exist. Step templates are left untouched; they are filled
per virtual user at run time.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Union

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from engine_errors import JourneyEngineError, JourneyStructureError
from engine_logging import get_logger
from flow_engine import FlowEngine
from interpolation import interpolate_object
from journey_models import Journey, ProfileConfig, ValidationIssue

logger = get_logger("loader")

__all__ = [
    "LoadedJourney", "load_document", "parse_journey", "load_journey",
    "load_journey_directory", "load_profile_config", "JOURNEY_SUFFIXES",
]

JOURNEY_SUFFIXES = (".journey.json", ".journey.yaml", ".journey.yml")
YAML_SUFFIXES = (".yaml", ".yml")


class LoadedJourney(NamedTuple):
    journey: Journey
    engine: FlowEngine
    issues: List[ValidationIssue]
    base_path: Path


def load_document(path: Union[str, Path]) -> Any:
    """Parses a .json, .yaml or .yml file into plain Python data."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    try:
        if suffix in YAML_SUFFIXES:
            return YAML(typ="safe").load(text)
        if suffix == ".json":
            return json.loads(text)
    except (json.JSONDecodeError, YAMLError) as e:
        raise JourneyEngineError(f"Failed to parse {path}: {e}") from e
    raise JourneyEngineError(f"Unsupported document format '{suffix}' for {path} (expected .json, .yaml or .yml)")


def _variable_context(journey: Journey, environment: Optional[Dict[str, Any]], variables: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    context: Dict[str, Any] = {}
    if environment is not None:
        context["env"] = dict(environment)
    context.update(journey.variables)
    if variables:
        context.update(variables)
    return context


def parse_journey(
    data: Union[Dict[str, Any], Journey],
    environment: Optional[Dict[str, Any]] = None,
    variables: Optional[Dict[str, Any]] = None,
    base_path: Union[str, Path] = ".",
) -> LoadedJourney:
    """
    Validates a journey document and builds its FlowEngine.
    Raises pydantic.ValidationError for shape errors and
    JourneyStructureError when targets are dangling.
    """
    journey = data if isinstance(data, Journey) else Journey.model_validate(data)

    context = _variable_context(journey, environment, variables)
    update: Dict[str, Any] = {}
    if journey.base_url:
        update["base_url"] = interpolate_object(journey.base_url, context)
    defaults = journey.defaults.model_dump(by_alias=True, exclude_none=True)
    if defaults:
        update["defaults"] = type(journey.defaults).model_validate(interpolate_object(defaults, context))
    if update:
        journey = journey.model_copy(update=update)

    engine = FlowEngine(journey)
    issues = engine.validate()
    errors = [issue for issue in issues if issue.type == 'error']
    if errors:
        message = "Journey structure errors:\n" + "\n".join(f"  - {issue.message}" for issue in errors)
        logger.error(f"Journey '{journey.id}' rejected: {len(errors)} structure error(s)")
        raise JourneyStructureError(message, issues)
    for issue in issues:
        logger.warning(f"Journey '{journey.id}': {issue.message}")

    logger.info(f"Loaded journey '{journey.name}' ({journey.id}) with {len(journey.steps)} step(s)")
    return LoadedJourney(journey=journey, engine=engine, issues=issues, base_path=Path(base_path))


def load_journey(
    path: Union[str, Path],
    environment: Optional[Dict[str, Any]] = None,
    variables: Optional[Dict[str, Any]] = None,
) -> LoadedJourney:
    path = Path(path).resolve()
    data = load_document(path)
    if not isinstance(data, dict):
        raise JourneyEngineError(f"Journey document {path} must be an object")
    return parse_journey(data, environment=environment, variables=variables, base_path=path.parent)


def load_journey_directory(
    directory: Union[str, Path],
    environment: Optional[Dict[str, Any]] = None,
    variables: Optional[Dict[str, Any]] = None,
) -> List[LoadedJourney]:
    """Loads every *.journey.json / *.journey.yaml file in `directory`, in name order."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Journey directory not found: {directory}")
    files = sorted(p for p in directory.iterdir() if p.is_file() and p.name.lower().endswith(JOURNEY_SUFFIXES))
    return [load_journey(p, environment=environment, variables=variables) for p in files]


def load_profile_config(path: Union[str, Path]) -> ProfileConfig:
    path = Path(path)
    data = load_document(path)
    try:
        return ProfileConfig.model_validate(data)
    except ValidationError:
        logger.error(f"Invalid profile document {path}")
        raise
