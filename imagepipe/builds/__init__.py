"""Build orchestration module.

This module handles:
- Dependency manifest staging and hashing
- Dependency layer cache keys and the content-addressed layer store
- Build metadata propagation
- Running cargo and image builds through the container engine
- Runtime image assembly
- Build records, artifacts and matrix runs
"""

from imagepipe.builds.models import Artifact, BuildRecord, DependencyLayer

__all__ = ["Artifact", "BuildRecord", "DependencyLayer"]

# Lazy imports for submodules to avoid circular imports
# Access via imagepipe.builds.pipeline, imagepipe.builds.service, etc.
