"""Variant catalog and resolution.

The built-in catalog replaces near-duplicate pipeline definitions with
one parameterized pipeline plus variants as data. Resolution always
requires an explicit variant name; there is no default variant.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from imagepipe.errors import VariantNotFoundError
from imagepipe.types import LibraryFamily, Linker
from imagepipe.variants.io import load_variants_from_file
from imagepipe.variants.schema import VariantSchema

if TYPE_CHECKING:
    from imagepipe.config import Settings

logger = logging.getLogger(__name__)


BUILTIN_VARIANTS: tuple[VariantSchema, ...] = (
    VariantSchema(
        name="musl-minimal",
        library_family=LibraryFamily.MINIMAL_LIBC,
        linker=Linker.DEFAULT,
        metadata_enabled=False,
        description="Smallest footprint: musl, system linker, no build metadata",
    ),
    VariantSchema(
        name="musl-mold",
        library_family=LibraryFamily.MINIMAL_LIBC,
        linker=Linker.ACCELERATED,
        metadata_enabled=False,
        description="musl with the mold linker for faster links",
    ),
    VariantSchema(
        name="musl-mold-metadata",
        library_family=LibraryFamily.MINIMAL_LIBC,
        linker=Linker.ACCELERATED,
        metadata_enabled=True,
        description="musl with mold and git metadata in binary and environment",
    ),
    VariantSchema(
        name="glibc-mold-metadata",
        library_family=LibraryFamily.STANDARD_LIBC,
        linker=Linker.ACCELERATED,
        metadata_enabled=True,
        description="glibc for broader compatibility, mold, git metadata",
    ),
)


def get_catalog(settings: Settings | None = None) -> dict[str, VariantSchema]:
    """Return all known variants keyed by name.

    Variants from ``settings.variants_file`` are added to the built-in
    catalog.

    Args:
        settings: Application settings.

    Returns:
        Dictionary of variant name to variant.

    Raises:
        ValueError: If a file variant reuses a built-in name.
    """
    catalog = {v.name: v for v in BUILTIN_VARIANTS}

    if settings is not None and settings.variants_file is not None:
        for variant in load_variants_from_file(settings.variants_file):
            if variant.name in catalog:
                raise ValueError(
                    f"Variant '{variant.name}' in {settings.variants_file} "
                    "shadows an existing variant"
                )
            catalog[variant.name] = variant
        logger.debug(
            "Loaded variants from %s (%d total)", settings.variants_file, len(catalog)
        )

    return catalog


def list_variants(settings: Settings | None = None) -> list[VariantSchema]:
    """List known variants sorted by name."""
    return sorted(get_catalog(settings).values(), key=lambda v: v.name)


def resolve_variant(
    name: str | None,
    settings: Settings | None = None,
) -> VariantSchema:
    """Resolve a variant by name.

    Args:
        name: Variant name; must be given explicitly.
        settings: Application settings.

    Returns:
        The matching variant.

    Raises:
        VariantNotFoundError: If no name is given or the name is unknown.
    """
    if not name:
        raise VariantNotFoundError("<none>")

    catalog = get_catalog(settings)
    try:
        return catalog[name]
    except KeyError:
        raise VariantNotFoundError(name) from None


def resolve_variants(
    names: list[str],
    settings: Settings | None = None,
) -> list[VariantSchema]:
    """Resolve several variants, keeping order and dropping duplicates.

    Raises:
        VariantNotFoundError: If the list is empty or any name is unknown.
    """
    if not names:
        raise VariantNotFoundError("<none>")

    resolved: list[VariantSchema] = []
    for name in dict.fromkeys(names):
        resolved.append(resolve_variant(name, settings))
    return resolved


__all__ = [
    "BUILTIN_VARIANTS",
    "get_catalog",
    "list_variants",
    "resolve_variant",
    "resolve_variants",
]
