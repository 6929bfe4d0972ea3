import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from .errors import DescriptorError
from .models import OrchestrationDescriptor


def parse_descriptor(raw_config: dict, default_project: str | None = None) -> OrchestrationDescriptor:
    """Validates a compose-style mapping into an OrchestrationDescriptor."""
    if not isinstance(raw_config, dict):
        raise DescriptorError("descriptor must be a mapping with a 'services' key")

    data = {"services": raw_config.get("services")}
    project = raw_config.get("name") or default_project
    if project:
        data["project"] = project

    try:
        return OrchestrationDescriptor.model_validate(data)
    except ValidationError as e:
        raise DescriptorError(str(e)) from e


def load_descriptor(path: Path) -> OrchestrationDescriptor:
    """Loads and validates the orchestration descriptor from disk."""
    if not path.exists():
        raise DescriptorError(f"{path} not found")

    with open(path) as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise DescriptorError(f"{path} is not valid YAML: {e}") from e

    # compose names the project after the directory holding the file
    default_project = re.sub(r"[^a-z0-9_-]", "", path.resolve().parent.name.lower()).lstrip("_-") or None
    return parse_descriptor(raw_config, default_project=default_project)
