"""Toolchain derivation for build variants.

Maps a variant's axes onto concrete base images and package sets for
the builder and runtime stages. Linker packages belong to the builder
only; runtime package sets hold just what executing the binary needs.
"""

from __future__ import annotations

from dataclasses import dataclass

from imagepipe.types import LibraryFamily, Linker
from imagepipe.variants.schema import VariantSchema

RUST_VERSION = "1.88"

# Linker flags for the accelerated linker; identical for dependency and
# source builds so cargo fingerprints stay valid across the two stages
ACCELERATED_RUSTFLAGS = ("-C", "linker=clang", "-C", "link-arg=-fuse-ld=mold")


@dataclass(frozen=True)
class FamilyProfile:
    """Base images and package sets for one library family."""

    builder_image: str
    runtime_image: str
    package_manager: str
    build_packages: tuple[str, ...]
    linker_packages: tuple[str, ...]
    certificate_package: str
    ssl_runtime_package: str
    c_runtime_packages: tuple[str, ...]
    timezone_package: str


FAMILY_PROFILES: dict[LibraryFamily, FamilyProfile] = {
    LibraryFamily.MINIMAL_LIBC: FamilyProfile(
        builder_image=f"rust:{RUST_VERSION}-alpine",
        runtime_image="alpine:3.21",
        package_manager="apk",
        build_packages=(
            "musl-dev",
            "protobuf-dev",
            "protoc",
            "pkgconfig",
            "openssl-dev",
            "openssl-libs-static",
        ),
        linker_packages=("clang", "mold"),
        certificate_package="ca-certificates",
        ssl_runtime_package="libssl3",
        c_runtime_packages=("libgcc",),
        timezone_package="tzdata",
    ),
    LibraryFamily.STANDARD_LIBC: FamilyProfile(
        builder_image=f"rust:{RUST_VERSION}-bookworm",
        runtime_image="debian:bookworm-slim",
        package_manager="apt",
        build_packages=(
            "protobuf-compiler",
            "libprotobuf-dev",
            "pkg-config",
            "libssl-dev",
        ),
        linker_packages=("clang", "mold"),
        certificate_package="ca-certificates",
        ssl_runtime_package="libssl3",
        # glibc ships in the base image
        c_runtime_packages=(),
        timezone_package="tzdata",
    ),
}


@dataclass(frozen=True)
class Toolchain:
    """Concrete toolchain for one variant.

    Attributes:
        library_family: Library family the toolchain targets.
        linker: Linker selection.
        builder_image: Base image for the dependency and source builds.
        runtime_image: Base image for the final runtime image.
        package_manager: 'apk' or 'apt'.
        build_packages: Packages installed into the builder image.
        runtime_packages: Packages installed into the runtime image.
        rustflags: Extra RUSTFLAGS for every cargo invocation.
    """

    library_family: LibraryFamily
    linker: Linker
    builder_image: str
    runtime_image: str
    package_manager: str
    build_packages: tuple[str, ...]
    runtime_packages: tuple[str, ...]
    rustflags: tuple[str, ...]
    certificate_package: str

    def fingerprint(self) -> dict[str, object]:
        """Return the values that affect compiled dependency artifacts."""
        return {
            "library_family": self.library_family.value,
            "linker": self.linker.value,
            "builder_image": self.builder_image,
            "build_packages": sorted(self.build_packages),
            "rustflags": list(self.rustflags),
        }


def toolchain_for(variant: VariantSchema) -> Toolchain:
    """Derive the toolchain for a variant.

    Args:
        variant: Variant to derive from.

    Returns:
        Toolchain with builder and runtime package sets.
    """
    profile = FAMILY_PROFILES[variant.library_family]

    build_packages = list(profile.build_packages)
    rustflags: tuple[str, ...] = ()
    if variant.linker == Linker.ACCELERATED:
        build_packages.extend(profile.linker_packages)
        rustflags = ACCELERATED_RUSTFLAGS

    runtime_packages = (
        profile.certificate_package,
        profile.ssl_runtime_package,
        *profile.c_runtime_packages,
        profile.timezone_package,
    )

    return Toolchain(
        library_family=variant.library_family,
        linker=variant.linker,
        builder_image=profile.builder_image,
        runtime_image=profile.runtime_image,
        package_manager=profile.package_manager,
        build_packages=tuple(build_packages),
        runtime_packages=runtime_packages,
        rustflags=rustflags,
        certificate_package=profile.certificate_package,
    )


def install_command(package_manager: str, packages: tuple[str, ...]) -> str:
    """Compose a shell command installing packages without caches.

    Args:
        package_manager: 'apk' or 'apt'.
        packages: Packages to install.

    Returns:
        Shell command string for a RUN instruction.

    Raises:
        ValueError: If the package manager is unknown.
    """
    names = " \\\n    ".join(packages)
    if package_manager == "apk":
        return f"apk add --no-cache \\\n    {names}"
    if package_manager == "apt":
        return (
            "apt-get update && apt-get install -y --no-install-recommends \\\n"
            f"    {names} \\\n"
            "    && rm -rf /var/lib/apt/lists/*"
        )
    raise ValueError(f"Unknown package manager: {package_manager}")


__all__ = [
    "ACCELERATED_RUSTFLAGS",
    "FAMILY_PROFILES",
    "RUST_VERSION",
    "FamilyProfile",
    "Toolchain",
    "install_command",
    "toolchain_for",
]
