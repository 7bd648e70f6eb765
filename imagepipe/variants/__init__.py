"""Build variant module.

This module handles:
- Variant schema validation
- The built-in variant catalog and variant files
- Explicit variant resolution
- Toolchain derivation per variant
"""

from imagepipe.variants.catalog import (
    BUILTIN_VARIANTS,
    get_catalog,
    list_variants,
    resolve_variant,
    resolve_variants,
)
from imagepipe.variants.schema import VariantSchema
from imagepipe.variants.toolchain import Toolchain, toolchain_for

__all__ = [
    "BUILTIN_VARIANTS",
    "Toolchain",
    "VariantSchema",
    "get_catalog",
    "list_variants",
    "resolve_variant",
    "resolve_variants",
    "toolchain_for",
]
