"""Desired-state document loading with validation.

All file operations enforce size limits, and every document is validated
at the boundary so a malformed resource never reaches the planner.

Document format::

    apiVersion: converge/v1
    resources:
      - kind: network
        name: main
        attributes:
          cidr_block: 10.0.0.0/16
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_RESOURCES_PER_PLAN, MAX_SPEC_FILE_SIZE_BYTES
from .models import InfrastructureDocument, Resource

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a desired-state document cannot be loaded or validated."""

    pass


def format_validation_error(error: ValidationError) -> str:
    """Format pydantic validation errors one per line."""
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return "\n".join(errors)


def parse_document(
    content: str,
    source: str = "<string>",
    max_resources: int = MAX_RESOURCES_PER_PLAN,
) -> list[Resource]:
    """Parse and validate a desired-state document from YAML text.

    Raises:
        SpecLoadError: If the YAML is invalid or fails validation.
    """
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {source}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Desired-state document must contain a YAML mapping: {source}")

    try:
        document = InfrastructureDocument.model_validate(raw_data)
    except ValidationError as e:
        raise SpecLoadError(
            f"Validation failed for {source}:\n{format_validation_error(e)}"
        ) from e

    if len(document.resources) > max_resources:
        raise SpecLoadError(
            f"{source} declares {len(document.resources)} resources, "
            f"more than the maximum of {max_resources}"
        )

    return document.resources


def load_document(path: Path, max_resources: int = MAX_RESOURCES_PER_PLAN) -> list[Resource]:
    """Load and validate a desired-state document.

    Args:
        path: YAML file to read.
        max_resources: Upper bound on the number of declared resources.

    Returns:
        Validated resources in declaration order.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Desired-state document not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Desired-state document exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {path}: {e}") from e

    resources = parse_document(content, source=str(path), max_resources=max_resources)
    logger.info("Loaded %d resources from %s", len(resources), path)
    return resources
