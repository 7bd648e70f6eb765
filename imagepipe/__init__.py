"""imagepipe - Layer-cached build pipeline for minimal RPC service images.

This package stages Cargo manifests, pre-builds dependencies into a
content-addressed layer cache, compiles the service binary on top of that
layer and assembles a minimal runtime container image for one build variant.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
