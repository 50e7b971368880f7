"""
Spec validation - JSON Schema checks for ImageRepository specs and names.
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63

IMAGE_REPOSITORY_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["image"],
    "additionalProperties": False,
    "properties": {
        "image": {"type": "string", "minLength": 1},
        "scanInterval": {
            "type": "string",
            "pattern": r"^(\d+(\.\d+)?(ms|h|m|s))+$",
        },
        "secretRef": {
            "type": "object",
            "required": ["name"],
            "additionalProperties": False,
            "properties": {"name": {"type": "string", "minLength": 1}},
        },
        "suspend": {"type": "boolean"},
    },
}

_spec_validator = Draft7Validator(IMAGE_REPOSITORY_SPEC_SCHEMA)


def validate_name_format(value: str, field_name: str) -> str:
    """
    Validate that a name follows Kubernetes naming conventions.

    Raises:
        ValueError: If the name is empty, too long or has bad characters.
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_image_repository_spec(
    spec: Dict[str, Any],
) -> Tuple[bool, Optional[str]]:
    """
    Validate an ImageRepository spec document.

    Args:
        spec: The spec as it appears on the wire (camelCase keys).

    Returns:
        Tuple of (is_valid, error_message)
    """
    errors = sorted(_spec_validator.iter_errors(spec), key=lambda e: list(e.path))
    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")

    logger.debug(f"Rejected ImageRepository spec: {error_messages}")
    return False, "; ".join(error_messages)
