"""Pydantic models for build variant validation.

A build variant is one complete pipeline flavor described as data: the
C runtime library family, the linker and whether build metadata is
threaded through to compile time and the runtime environment.
"""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from imagepipe.types import LibraryFamily, Linker

VARIANT_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.\-]*$")


class VariantSchema(BaseModel):
    """Schema for a single build variant.

    Attributes:
        name: Unique stable identifier, also used in image tags.
        library_family: minimal-libc (musl) or standard-libc (glibc).
        linker: default or accelerated (mold via clang).
        metadata_enabled: Thread GIT_COMMIT/GIT_COMMIT_SHORT/BUILD_DATE
            through compile and runtime environments.
        description: Optional human-readable description.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(description="Unique variant identifier")
    library_family: LibraryFamily = Field(description="C runtime library family")
    linker: Linker = Field(default=Linker.DEFAULT, description="Release linker")
    metadata_enabled: bool = Field(
        default=False, description="Propagate build metadata"
    )
    description: str | None = Field(default=None)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name is usable as an image tag component."""
        if not VARIANT_NAME_PATTERN.match(v):
            raise ValueError(
                "name must be lowercase alphanumerics, '.', '_' or '-', "
                f"got '{v}'"
            )
        if len(v) > 64:
            raise ValueError("name must be at most 64 characters")
        return v

    def axes(self) -> dict[str, object]:
        """Return the variant's configuration axes as plain values."""
        return {
            "library_family": self.library_family.value,
            "linker": self.linker.value,
            "metadata_enabled": self.metadata_enabled,
        }


class VariantFileSchema(BaseModel):
    """Schema for a variants file (YAML or JSON)."""

    model_config = ConfigDict(extra="forbid")

    variants: list[VariantSchema] = Field(default_factory=list)

    @field_validator("variants")
    @classmethod
    def validate_unique_names(cls, v: list[VariantSchema]) -> list[VariantSchema]:
        """Validate variant names are unique within the file."""
        seen: set[str] = set()
        for variant in v:
            if variant.name in seen:
                raise ValueError(f"duplicate variant name '{variant.name}'")
            seen.add(variant.name)
        return v


__all__ = ["VARIANT_NAME_PATTERN", "VariantFileSchema", "VariantSchema"]
