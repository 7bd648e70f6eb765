"""Build metadata propagation.

Build metadata identifies the exact source revision packaged. It is
supplied once per invocation, defaults each field to the literal
"unknown" so the pipeline runs without CI context, and is never mutated
afterwards. Variants with metadata enabled expose it to the compiler and
to the runtime image environment under the same variable names.
"""

from __future__ import annotations

import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

ENV_COMMIT = "GIT_COMMIT"
ENV_COMMIT_SHORT = "GIT_COMMIT_SHORT"
ENV_BUILD_DATE = "BUILD_DATE"


class BuildMetadata(BaseModel):
    """Immutable build metadata.

    Attributes:
        commit_hash: Full commit hash.
        short_hash: Abbreviated commit hash.
        build_date: Build timestamp as supplied by the invoker.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    commit_hash: str = UNKNOWN
    short_hash: str = UNKNOWN
    build_date: str = UNKNOWN

    @field_validator("commit_hash", "short_hash", "build_date", mode="before")
    @classmethod
    def default_blank(cls, v: object) -> object:
        """Treat None and blank strings as unknown."""
        if v is None:
            return UNKNOWN
        if isinstance(v, str) and not v.strip():
            return UNKNOWN
        return v.strip() if isinstance(v, str) else v

    def to_env(self) -> dict[str, str]:
        """Return the environment variables carrying this metadata."""
        return {
            ENV_COMMIT: self.commit_hash,
            ENV_COMMIT_SHORT: self.short_hash,
            ENV_BUILD_DATE: self.build_date,
        }

    def is_unknown(self) -> bool:
        """Whether no field was supplied."""
        return self == BuildMetadata()


def metadata_env(metadata: BuildMetadata, enabled: bool) -> dict[str, str]:
    """Return metadata environment for a variant.

    Args:
        metadata: Build metadata for this invocation.
        enabled: Whether the variant threads metadata through.

    Returns:
        Environment mapping; empty when metadata is disabled.
    """
    return metadata.to_env() if enabled else {}


def _git(repo: Path, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=repo,
            capture_output=True,
            text=True,
            timeout=30,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("git %s failed in %s: %s", " ".join(args), repo, e)
        return None
    return result.stdout.strip() or None


def metadata_from_git(
    repo: Path,
    build_date: str | None = None,
) -> BuildMetadata:
    """Read build metadata from a git checkout.

    Fields git cannot provide fall back to "unknown". The build date
    defaults to the current UTC time.

    Args:
        repo: Path inside a git work tree.
        build_date: Explicit build date overriding the current time.

    Returns:
        BuildMetadata for the checked-out revision.
    """
    if build_date is None:
        build_date = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    return BuildMetadata(
        commit_hash=_git(repo, "rev-parse", "HEAD"),
        short_hash=_git(repo, "rev-parse", "--short", "HEAD"),
        build_date=build_date,
    )


__all__ = [
    "ENV_BUILD_DATE",
    "ENV_COMMIT",
    "ENV_COMMIT_SHORT",
    "UNKNOWN",
    "BuildMetadata",
    "metadata_env",
    "metadata_from_git",
]
