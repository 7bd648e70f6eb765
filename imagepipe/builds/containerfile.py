"""Containerfile rendering.

Renders the two images the pipeline needs from a variant's toolchain:
the toolchain image the cargo steps run in, and the runtime image that
carries only the service binary and what executing it requires.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping

from imagepipe.variants.toolchain import Toolchain, install_command

TOOLCHAIN_REPOSITORY = "imagepipe-toolchain"
RUNTIME_WORKDIR = "/app"


def render_toolchain_containerfile(toolchain: Toolchain) -> str:
    """Render the Containerfile of a variant's toolchain image.

    Args:
        toolchain: Toolchain to render.

    Returns:
        Containerfile text.
    """
    lines = [
        f"FROM {toolchain.builder_image}",
        "",
        f"RUN {install_command(toolchain.package_manager, toolchain.build_packages)}",
        "",
    ]
    return "\n".join(lines)


def toolchain_image_tag(toolchain: Toolchain) -> str:
    """Content-addressed tag for a toolchain image.

    The tag changes whenever the rendered Containerfile changes, so a
    stale toolchain image is never reused.
    """
    digest = hashlib.sha256(
        render_toolchain_containerfile(toolchain).encode("utf-8")
    ).hexdigest()
    family = toolchain.library_family.value
    linker = toolchain.linker.value
    return f"{TOOLCHAIN_REPOSITORY}:{family}-{linker}-{digest[:12]}"


def _quote_env_value(value: str) -> str:
    # Double-quoted and escaped; a literal $ must not be expanded by the builder
    return json.dumps(value, ensure_ascii=False).replace("$", "\\$")


def _env_line(env: Mapping[str, str]) -> str:
    pairs = [f"{key}={_quote_env_value(env[key])}" for key in env]
    return "ENV " + " \\\n    ".join(pairs)


def render_runtime_containerfile(
    toolchain: Toolchain,
    binary_name: str,
    exposed_port: int,
    environment: Mapping[str, str],
) -> str:
    """Render the Containerfile of the minimal runtime image.

    Args:
        toolchain: Variant toolchain (runtime base image and packages).
        binary_name: Name of the binary placed at the context root.
        exposed_port: Port advertised by the image.
        environment: Process environment (timezone and metadata).

    Returns:
        Containerfile text.
    """
    lines = [
        f"FROM {toolchain.runtime_image}",
        "",
        f"RUN {install_command(toolchain.package_manager, toolchain.runtime_packages)}",
        "",
        f"WORKDIR {RUNTIME_WORKDIR}",
        "",
        f"COPY {binary_name} {RUNTIME_WORKDIR}/{binary_name}",
        "",
    ]
    if environment:
        lines.extend([_env_line(environment), ""])
    lines.extend(
        [
            f"EXPOSE {exposed_port}",
            "",
            f"CMD {json.dumps(['./' + binary_name])}",
            "",
        ]
    )
    return "\n".join(lines)


__all__ = [
    "RUNTIME_WORKDIR",
    "TOOLCHAIN_REPOSITORY",
    "render_runtime_containerfile",
    "render_toolchain_containerfile",
    "toolchain_image_tag",
]
