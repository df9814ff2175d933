"""Manifest loading with validation.

Reads YAML manifests (one or more documents per file) into the resource
models. File size is checked before reading and every document is validated
against the model of its kind.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TypeVar

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import ApiObject, get_model_class

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=ApiObject)


class LoaderError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        lines.append(f"  - {loc}: {item['msg']}")
    return "\n".join(lines)


def parse_manifest(document: dict, source: str = "<manifest>") -> ApiObject:
    """Validate one manifest document into its model.

    Args:
        document: Parsed YAML mapping with kind, metadata and spec.
        source: Where the document came from, for error messages.

    Raises:
        LoaderError: If the kind is unknown or validation fails.
    """
    kind = document.get("kind")
    if not isinstance(kind, str):
        raise LoaderError(f"Manifest without a kind in {source}")

    try:
        model = get_model_class(kind)
    except ValueError as e:
        raise LoaderError(f"{e} ({source})") from e

    try:
        return model.model_validate(document)
    except ValidationError as e:
        raise LoaderError(f"Validation failed for {kind} in {source}:\n{_format_validation_error(e)}") from e


def load_manifests(path: Path) -> list[ApiObject]:
    """Load every manifest in a YAML file.

    Empty documents are skipped.

    Raises:
        LoaderError: If the file cannot be read, parsed or validated.
    """
    if not path.exists():
        raise LoaderError(f"Manifest file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise LoaderError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise LoaderError(f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise LoaderError(f"Failed to read manifest file {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise LoaderError(f"Manifest file {path} is not valid UTF-8: {e}") from e

    try:
        documents = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise LoaderError(f"Invalid YAML in {path}: {e}") from e

    objects: list[ApiObject] = []
    for index, document in enumerate(documents):
        if document is None:
            continue
        if not isinstance(document, dict):
            raise LoaderError(f"Document {index} in {path} must be a YAML mapping")
        objects.append(parse_manifest(document, f"{path}#{index}"))

    logger.info("Loaded manifests", extra={"path": str(path), "count": len(objects)})
    return objects


def select(objects: list[ApiObject], kind: type[T]) -> list[T]:
    """The objects of one kind, in file order."""
    return [obj for obj in objects if isinstance(obj, kind)]
