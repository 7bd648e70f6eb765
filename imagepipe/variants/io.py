"""Variant file loading.

This module loads additional build variants from YAML or JSON files and
validates them against the variant schema.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from imagepipe.variants.schema import VariantFileSchema, VariantSchema


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the content is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_variants_from_file(path: Path) -> list[VariantSchema]:
    """Load and validate variants from a YAML or JSON file.

    The file holds a top-level ``variants`` list; the format is chosen by
    the file extension (``.json`` for JSON, anything else YAML).

    Args:
        path: Path to the variants file.

    Returns:
        List of validated variants.

    Raises:
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match the schema.
        ValueError: If the content is not a mapping.
    """
    data = load_json(path) if path.suffix.lower() == ".json" else load_yaml(path)
    return VariantFileSchema.model_validate(data).variants


def variants_to_yaml_string(variants: list[VariantSchema]) -> str:
    """Render variants as a YAML document loadable by load_variants_from_file.

    Args:
        variants: Variants to render.

    Returns:
        YAML string.
    """
    data = {
        "variants": [v.model_dump(mode="json", exclude_none=True) for v in variants]
    }
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


__all__ = [
    "load_json",
    "load_variants_from_file",
    "load_yaml",
    "variants_to_yaml_string",
]
