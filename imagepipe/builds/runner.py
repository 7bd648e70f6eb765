"""Step runner and container engine commands.

This module handles:
- Composing container engine commands (image build, inspect, cargo run)
- Executing pipeline steps with subprocess
- Capturing stdout/stderr to per-step log files
- Enforcing step timeouts
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# Fixed in-container paths; identical for dependency and source builds so
# cargo fingerprints and remapped paths match between the two
CONTAINER_WORKSPACE = "/workspace"
CONTAINER_TARGET_DIR = "/cache/target"
CONTAINER_CARGO_HOME = "/cache/cargo-home"

REMAP_RUSTFLAGS = (
    f"--remap-path-prefix={CONTAINER_WORKSPACE}=.",
    f"--remap-path-prefix={CONTAINER_CARGO_HOME}=cargo",
)


class StepExecutionError(Exception):
    """Raised when a pipeline step cannot be executed."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "step_error",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.log_path = log_path


@dataclass
class StepResult:
    """Result of a step execution.

    Attributes:
        success: Whether the step succeeded.
        exit_code: Process exit code.
        log_path: Path to the step log file.
        started_at: Step start time.
        finished_at: Step finish time.
        command: The command that was executed.
        error_message: Error message if the step failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None


def run_step(
    cmd: Sequence[str],
    log_path: Path,
    cwd: Path | None = None,
    timeout: int | None = None,
    env_override: Mapping[str, str] | None = None,
) -> StepResult:
    """Execute one pipeline step.

    Args:
        cmd: Command as list of strings.
        log_path: File receiving the command's stdout and stderr.
        cwd: Working directory.
        timeout: Timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.

    Returns:
        StepResult with execution details.

    Raises:
        StepExecutionError: If the step times out or cannot be started.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)

    cmd_str = shlex.join(cmd)
    logger.info("Executing step: %s", cmd_str)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd or Path.cwd()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            env: dict[str, str] | None = None
            if env_override:
                env = dict(os.environ)
                env.update(env_override)

            result = subprocess.run(
                list(cmd),
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                timeout=timeout,
                env=env,
                check=False,
            )

            exit_code = result.returncode
            success = exit_code == 0

            if not success:
                error_message = f"Step failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"Step timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise StepExecutionError(
            error_message,
            exit_code=-1,
            code="step_timeout",
            log_path=log_path,
        ) from e

    except OSError as e:
        error_message = f"Failed to execute step: {e}"
        logger.error(error_message)
        raise StepExecutionError(
            error_message,
            exit_code=None,
            code="execution_error",
            log_path=log_path,
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return StepResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def read_log_tail(log_path: Path | str | None, lines: int = 40) -> str:
    """Return the last lines of a step log, or an empty string."""
    if log_path is None:
        return ""
    path = Path(log_path)
    if not path.is_file():
        return ""
    content = path.read_text(encoding="utf-8", errors="replace").splitlines()
    return "\n".join(content[-lines:])


def compose_rustflags(extra: Sequence[str] = ()) -> str:
    """Compose RUSTFLAGS shared by dependency and source builds."""
    return " ".join([*REMAP_RUSTFLAGS, *extra])


def compose_cargo_command(
    executable: str,
    image: str,
    workspace: Path,
    target_dir: Path,
    cargo_home: Path,
    rustflags: Sequence[str] = (),
    locked: bool = False,
    env: Mapping[str, str] | None = None,
    user: str | None = None,
) -> list[str]:
    """Compose a containerized `cargo build --release` command.

    Args:
        executable: Container engine executable.
        image: Toolchain image tag.
        workspace: Host directory mounted as the cargo workspace.
        target_dir: Host directory mounted as CARGO_TARGET_DIR.
        cargo_home: Host directory mounted as CARGO_HOME.
        rustflags: Toolchain RUSTFLAGS.
        locked: Pass --locked (requires Cargo.lock).
        env: Extra environment for the compiler (build metadata).
        user: Optional uid:gid to run as.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [executable, "run", "--rm"]
    if user:
        cmd.extend(["--user", user])

    cmd.extend(["-v", f"{workspace.resolve()}:{CONTAINER_WORKSPACE}"])
    cmd.extend(["-v", f"{target_dir.resolve()}:{CONTAINER_TARGET_DIR}"])
    cmd.extend(["-v", f"{cargo_home.resolve()}:{CONTAINER_CARGO_HOME}"])
    cmd.extend(["-w", CONTAINER_WORKSPACE])

    container_env = {
        "CARGO_TARGET_DIR": CONTAINER_TARGET_DIR,
        "CARGO_HOME": CONTAINER_CARGO_HOME,
        "CARGO_INCREMENTAL": "0",
        "RUSTFLAGS": compose_rustflags(rustflags),
    }
    if env:
        container_env.update(env)
    for key in sorted(container_env):
        cmd.extend(["-e", f"{key}={container_env[key]}"])

    cmd.extend([image, "cargo", "build", "--release"])
    if locked:
        cmd.append("--locked")
    return cmd


def compose_image_build_command(
    executable: str,
    context_dir: Path,
    containerfile: Path,
    tag: str,
    labels: Mapping[str, str] | None = None,
) -> list[str]:
    """Compose an image build command.

    Args:
        executable: Container engine executable.
        context_dir: Build context directory.
        containerfile: Containerfile path.
        tag: Image tag.
        labels: Optional image labels.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [executable, "build", "-t", tag, "-f", str(containerfile)]
    labels = labels or {}
    for key in sorted(labels):
        cmd.extend(["--label", f"{key}={labels[key]}"])
    cmd.append(str(context_dir))
    return cmd


class ContainerEngine:
    """Container engine CLI wrapper (docker or podman).

    All long-running operations go through run_step so their output
    lands in step logs.
    """

    def __init__(
        self,
        executable: str = "docker",
        timeout: int | None = None,
        run_as_host_user: bool = True,
    ) -> None:
        self.executable = executable
        self.timeout = timeout
        self.run_as_host_user = run_as_host_user

    def _user(self) -> str | None:
        if not self.run_as_host_user or not hasattr(os, "getuid"):
            return None
        return f"{os.getuid()}:{os.getgid()}"

    def image_exists(self, tag: str) -> bool:
        """Check whether an image tag exists locally.

        Raises:
            StepExecutionError: If the engine cannot be executed.
        """
        try:
            result = subprocess.run(
                [self.executable, "image", "inspect", tag],
                capture_output=True,
                text=True,
                timeout=60,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise StepExecutionError(
                f"Failed to run {self.executable} image inspect: {e}",
                code="execution_error",
            ) from e
        return result.returncode == 0

    def image_id(self, tag: str) -> str:
        """Return the image ID of a local tag.

        Raises:
            StepExecutionError: If inspection fails.
        """
        try:
            result = subprocess.run(
                [self.executable, "image", "inspect", "--format", "{{.Id}}", tag],
                capture_output=True,
                text=True,
                timeout=60,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise StepExecutionError(
                f"image inspect failed for {tag}: {e.stderr}",
                exit_code=e.returncode,
                code="inspect_error",
            ) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise StepExecutionError(
                f"Failed to run {self.executable} image inspect: {e}",
                code="execution_error",
            ) from e
        return result.stdout.strip()

    def build_image(
        self,
        context_dir: Path,
        containerfile: Path,
        tag: str,
        log_path: Path,
        labels: Mapping[str, str] | None = None,
    ) -> StepResult:
        """Build and tag an image from a context directory."""
        cmd = compose_image_build_command(
            self.executable, context_dir, containerfile, tag, labels
        )
        return run_step(cmd, log_path, cwd=context_dir, timeout=self.timeout)

    def run_cargo(
        self,
        image: str,
        workspace: Path,
        target_dir: Path,
        cargo_home: Path,
        log_path: Path,
        rustflags: Sequence[str] = (),
        locked: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> StepResult:
        """Run a release cargo build inside the toolchain image."""
        cmd = compose_cargo_command(
            self.executable,
            image,
            workspace,
            target_dir,
            cargo_home,
            rustflags=rustflags,
            locked=locked,
            env=env,
            user=self._user(),
        )
        return run_step(cmd, log_path, cwd=workspace, timeout=self.timeout)


__all__ = [
    "CONTAINER_CARGO_HOME",
    "CONTAINER_TARGET_DIR",
    "CONTAINER_WORKSPACE",
    "ContainerEngine",
    "StepExecutionError",
    "StepResult",
    "compose_cargo_command",
    "compose_image_build_command",
    "compose_rustflags",
    "read_log_tail",
    "run_step",
]
