"""Thin CLI wrapper for imagepipe.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from imagepipe import __version__
from imagepipe.config import get_settings, print_settings_json

app = typer.Typer(
    name="imagepipe",
    help="imagepipe - layer-cached build pipeline for minimal RPC service images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def _print_json(data: object) -> None:
    # print_json never wraps, so long paths survive a narrow terminal
    console.print_json(json.dumps(data))


def _variant_errors() -> tuple[type[Exception], ...]:
    """Errors raised while loading or resolving the variant catalog."""
    import yaml
    from pydantic import ValidationError

    from imagepipe.errors import VariantNotFoundError

    return (
        VariantNotFoundError,
        ValidationError,
        ValueError,
        FileNotFoundError,
        yaml.YAMLError,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"imagepipe version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route library logging to stderr at the configured level."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """imagepipe - layer-cached build pipeline for minimal RPC service images."""
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
    else:
        variants_display = (
            str(settings.variants_file) if settings.variants_file else "(built-in only)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Variants file:       {variants_display}")
        console.print()
        console.print("[bold]Image:[/bold]")
        console.print(f"  Container engine:    {settings.container_engine}")
        console.print(f"  Repository:          {settings.image_repository}")
        binary_display = settings.binary_name or "(from Cargo.toml)"
        console.print(f"  Binary name:         {binary_display}")
        console.print(f"  Exposed port:        {settings.exposed_port}")
        console.print(f"  Timezone:            {settings.timezone}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Keep work dir:       {settings.keep_work_dir}")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


variants_app = typer.Typer(help="Inspect build variants")
app.add_typer(variants_app, name="variants")


@variants_app.command("list")
def variants_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List known build variants."""
    from imagepipe.variants import list_variants

    try:
        variants = list_variants(get_settings())
    except _variant_errors() as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        output = [v.model_dump(mode="json") for v in variants]
        _print_json(output)
        return

    console.print(f"[bold]Found {len(variants)} variant(s):[/bold]")
    console.print()
    for v in variants:
        console.print(f"  [green]{v.name}[/green]")
        console.print(f"    Library family: {v.library_family.value}")
        console.print(f"    Linker: {v.linker.value}")
        metadata_display = "enabled" if v.metadata_enabled else "disabled"
        console.print(f"    Metadata: {metadata_display}")
        if v.description:
            console.print(f"    {v.description}")
        console.print()


@variants_app.command("show")
def variants_show(
    name: Annotated[str, typer.Argument(help="Variant name")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a variant and the toolchain derived from it."""
    from imagepipe.builds.containerfile import (
        render_toolchain_containerfile,
        toolchain_image_tag,
    )
    from imagepipe.variants import resolve_variant, toolchain_for

    try:
        variant = resolve_variant(name, get_settings())
    except _variant_errors() as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    toolchain = toolchain_for(variant)

    if json_output:
        output = {
            **variant.model_dump(mode="json"),
            "toolchain": {
                **toolchain.fingerprint(),
                "runtime_image": toolchain.runtime_image,
                "runtime_packages": list(toolchain.runtime_packages),
                "image_tag": toolchain_image_tag(toolchain),
            },
        }
        _print_json(output)
        return

    console.print(f"[bold]{variant.name}[/bold]")
    console.print(f"  Library family:   {variant.library_family.value}")
    console.print(f"  Linker:           {variant.linker.value}")
    console.print(f"  Metadata:         {variant.metadata_enabled}")
    console.print(f"  Builder image:    {toolchain.builder_image}")
    console.print(f"  Runtime image:    {toolchain.runtime_image}")
    console.print(f"  Runtime packages: {', '.join(toolchain.runtime_packages)}")
    console.print()
    console.print("[bold]Toolchain Containerfile:[/bold]")
    console.print(render_toolchain_containerfile(toolchain), markup=False)


def _resolve_metadata(
    source: Path,
    commit_hash: str | None,
    short_hash: str | None,
    build_date: str | None,
    from_git: bool,
):
    from imagepipe.builds.metadata import BuildMetadata, metadata_from_git

    if from_git:
        detected = metadata_from_git(source, build_date=build_date)
        return BuildMetadata(
            commit_hash=commit_hash or detected.commit_hash,
            short_hash=short_hash or detected.short_hash,
            build_date=detected.build_date,
        )
    return BuildMetadata(
        commit_hash=commit_hash,
        short_hash=short_hash,
        build_date=build_date,
    )


def _print_failure(build, log_path: str | None) -> None:
    from imagepipe.builds.runner import read_log_tail

    err_console.print(
        f"[red]Build #{build.id} ({build.variant_name}) failed at "
        f"{build.stage or 'start'}: {build.error_message}[/red]"
    )
    tail = read_log_tail(log_path)
    if tail:
        err_console.print(f"[bold]Last lines of {log_path}:[/bold]")
        err_console.print(tail, markup=False, highlight=False)


builds_app = typer.Typer(help="Build runtime images")
app.add_typer(builds_app, name="build")


SourceArg = Annotated[
    Path,
    typer.Argument(help="Project source tree containing Cargo.toml"),
]
CommitOpt = Annotated[
    str | None,
    typer.Option("--commit-hash", help="Full commit hash (default: unknown)"),
]
ShortOpt = Annotated[
    str | None,
    typer.Option("--short-hash", help="Short commit hash (default: unknown)"),
]
DateOpt = Annotated[
    str | None,
    typer.Option("--build-date", help="Build date (default: unknown)"),
]
FromGitOpt = Annotated[
    bool,
    typer.Option("--from-git", help="Read commit hashes from the source checkout"),
]
JsonOpt = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


@builds_app.command("run")
def build_run(
    source: SourceArg,
    variant_name: Annotated[
        str,
        typer.Option("--variant", help="Build variant (required, no default)"),
    ],
    tag: Annotated[
        str | None,
        typer.Option("--tag", "-t", help="Runtime image tag"),
    ] = None,
    commit_hash: CommitOpt = None,
    short_hash: ShortOpt = None,
    build_date: DateOpt = None,
    from_git: FromGitOpt = False,
    json_output: JsonOpt = False,
) -> None:
    """Run the pipeline for exactly one variant."""
    from imagepipe.builds.service import run_build
    from imagepipe.db import create_all_tables, get_engine, get_session_factory
    from imagepipe.variants import resolve_variant

    settings = get_settings()

    if not (source / "Cargo.toml").is_file():
        err_console.print(f"[red]No Cargo.toml in {source}[/red]")
        raise typer.Exit(code=1)

    try:
        variant = resolve_variant(variant_name, settings)
    except _variant_errors() as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    metadata = _resolve_metadata(source, commit_hash, short_hash, build_date, from_git)

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        outcome = run_build(
            session,
            source,
            variant,
            metadata=metadata,
            settings=settings,
            tag=tag,
            autocommit=True,
        )
        session.commit()
        build = outcome.build

        if json_output:
            output = {
                "build_id": build.id,
                "variant": build.variant_name,
                "status": build.status,
                "stage": build.stage,
                "is_cache_hit": build.is_cache_hit,
                "dependency_key": build.dependency_key,
                "build_key": build.build_key,
                "binary_sha256": build.binary_sha256,
                "image_tag": build.image_tag,
                "image_id": build.image_id,
                "error_type": build.error_type,
                "error_message": build.error_message,
                "log_path": build.log_path,
            }
            _print_json(output)

        if outcome.error is not None:
            _print_failure(build, outcome.error.log_path)
            raise typer.Exit(code=outcome.error.status)

        if not json_output:
            result = outcome.result
            console.print(f"[green]Build #{build.id} succeeded[/green]")
            console.print(f"  Image:            {build.image_tag}")
            console.print(f"  Image ID:         {build.image_id}")
            console.print(f"  Binary sha256:    {build.binary_sha256}")
            console.print(
                f"  Dependency layer: {'reused' if build.is_cache_hit else 'built'}"
                f" ({build.dependency_key})"
            )
            if result is not None:
                console.print(f"  Manifest:         {result.manifest_path}")


@builds_app.command("matrix")
def build_matrix(
    source: SourceArg,
    variant_names: Annotated[
        list[str],
        typer.Option("--variant", help="Variant to build (repeat for several)"),
    ],
    mode: Annotated[
        str,
        typer.Option(
            "--mode", "-m", help="Matrix mode: fail-fast or best-effort (default)"
        ),
    ] = "best-effort",
    commit_hash: CommitOpt = None,
    short_hash: ShortOpt = None,
    build_date: DateOpt = None,
    from_git: FromGitOpt = False,
    json_output: JsonOpt = False,
) -> None:
    """Run independent pipelines for several variants concurrently."""
    from imagepipe.builds.service import run_matrix
    from imagepipe.db import create_all_tables, get_engine, get_session_factory
    from imagepipe.types import BatchMode
    from imagepipe.variants import resolve_variants

    settings = get_settings()

    try:
        batch_mode = BatchMode(mode)
    except ValueError:
        err_console.print(f"[red]Invalid mode: {mode}[/red]")
        err_console.print("Valid values: fail-fast, best-effort")
        raise typer.Exit(code=1) from None

    try:
        variants = resolve_variants(variant_names, settings)
    except _variant_errors() as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    metadata = _resolve_metadata(source, commit_hash, short_hash, build_date, from_git)

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    if not json_output:
        console.print(f"[blue]Building {len(variants)} variant(s)...[/blue]")

    result = run_matrix(
        factory,
        source,
        variants,
        metadata=metadata,
        settings=settings,
        mode=batch_mode,
    )

    if json_output:
        console.print_json(result.model_dump_json())
    else:
        console.print()
        console.print("[bold]Matrix Results:[/bold]")
        console.print(f"  Total variants: {result.total}")
        console.print(f"  [green]Succeeded: {result.succeeded}[/green]")
        console.print(f"  [blue]Dependency cache hits: {result.cache_hits}[/blue]")
        if result.failed > 0:
            console.print(f"  [red]Failed: {result.failed}[/red]")
        if result.stopped_early:
            console.print("  [yellow]Stopped early (fail-fast mode)[/yellow]")

        console.print()
        for r in result.results:
            name = r["variant"]
            if r.get("skipped"):
                console.print(f"  [yellow]- {name} (skipped)[/yellow]")
            elif r["success"]:
                hit_marker = " (dependency cache hit)" if r["is_cache_hit"] else ""
                console.print(f"  [green]✓ {name}{hit_marker}[/green]")
                console.print(f"      {r['image_tag']}")
            else:
                console.print(f"  [red]✗ {name}[/red]")
                if r["error_message"]:
                    console.print(f"      Error: {r['error_message']}")
                if r["log_path"]:
                    console.print(f"      Log: {r['log_path']}")

    if result.failed > 0 or result.stopped_early:
        raise typer.Exit(code=1)


@builds_app.command("list")
def builds_list(
    variant_name: Annotated[
        str | None,
        typer.Option("--variant", help="Filter by variant"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: JsonOpt = False,
) -> None:
    """List build records."""
    from imagepipe.builds.service import list_builds
    from imagepipe.db import create_all_tables, get_engine, get_session_factory
    from imagepipe.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            err_console.print(f"[red]Invalid status: {status}[/red]")
            err_console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        builds = list_builds(
            session, variant_name=variant_name, status=status_filter, limit=limit
        )

        if not builds:
            if json_output:
                _print_json([])
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": b.id,
                    "variant": b.variant_name,
                    "status": b.status,
                    "stage": b.stage,
                    "is_cache_hit": b.is_cache_hit,
                    "image_tag": b.image_tag,
                    "binary_sha256": b.binary_sha256,
                    "commit_hash": b.commit_hash,
                    "requested_at": b.requested_at.isoformat()
                    if b.requested_at
                    else None,
                    "finished_at": b.finished_at.isoformat() if b.finished_at else None,
                    "error_type": b.error_type,
                    "error_message": b.error_message,
                }
                for b in builds
            ]
            _print_json(output)
            return

        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        console.print()
        for b in builds:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "running": "blue",
                "pending": "yellow",
            }.get(b.status, "white")
            console.print(f"  [{status_color}]Build #{b.id}[/{status_color}]")
            console.print(f"    Variant: {b.variant_name}")
            console.print(f"    Status: {b.status} ({b.stage or 'not started'})")
            console.print(f"    Dependency cache hit: {b.is_cache_hit}")
            if b.image_tag:
                console.print(f"    Image: {b.image_tag}")
            if b.error_message:
                console.print(f"    Error: {b.error_message}")
            console.print()


@builds_app.command("show")
def builds_show(
    build_id: Annotated[int, typer.Argument(help="Build ID")],
) -> None:
    """Show a build record and its artifacts."""
    from imagepipe.builds.service import BuildNotFoundError, get_build
    from imagepipe.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            build = get_build(session, build_id)
        except BuildNotFoundError as e:
            err_console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None

        output = {
            "id": build.id,
            "variant": build.variant_name,
            "library_family": build.library_family,
            "linker": build.linker,
            "metadata_enabled": build.metadata_enabled,
            "status": build.status,
            "stage": build.stage,
            "source_root": build.source_root,
            "dependency_key": build.dependency_key,
            "is_cache_hit": build.is_cache_hit,
            "source_hash": build.source_hash,
            "build_key": build.build_key,
            "metadata": {
                "commit_hash": build.commit_hash,
                "short_hash": build.short_hash,
                "build_date": build.build_date,
            },
            "binary_sha256": build.binary_sha256,
            "image_tag": build.image_tag,
            "image_id": build.image_id,
            "build_dir": build.build_dir,
            "log_path": build.log_path,
            "error_type": build.error_type,
            "error_message": build.error_message,
            "artifacts": [
                {
                    "kind": a.kind,
                    "filename": a.filename,
                    "size_bytes": a.size_bytes,
                    "sha256": a.sha256,
                }
                for a in build.artifacts
            ],
        }
        _print_json(output)


cache_app = typer.Typer(help="Manage the dependency layer cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    json_output: JsonOpt = False,
) -> None:
    """List dependency layers in the cache."""
    from imagepipe.builds.cache import LayerStore
    from imagepipe.builds.service import list_layers
    from imagepipe.db import (
        create_all_tables,
        get_engine,
        get_session,
        get_session_factory,
    )

    settings = get_settings()
    layers = LayerStore(settings.cache_dir).list_layers()

    engine = get_engine()
    create_all_tables(engine)
    with get_session(get_session_factory(engine)) as session:
        last_used = {
            row.cache_key: row.last_used_at.isoformat() if row.last_used_at else None
            for row in list_layers(session)
        }

    if json_output:
        _print_json(
            [
                {**layer.to_dict(), "last_used_at": last_used.get(layer.cache_key)}
                for layer in layers
            ]
        )
        return

    if not layers:
        console.print("[yellow]No dependency layers cached[/yellow]")
        return

    console.print(f"[bold]Found {len(layers)} dependency layer(s):[/bold]")
    console.print()
    for layer in layers:
        toolchain = layer.inputs.get("toolchain", {})
        console.print(f"  [green]{layer.cache_key}[/green]")
        console.print(
            f"    Toolchain: {toolchain.get('library_family', '?')}"
            f"/{toolchain.get('linker', '?')}"
        )
        console.print(f"    Manifest: {layer.inputs.get('manifest_hash', '?')}")
        console.print(f"    Digest: {layer.digest}")
        console.print(f"    Size: {layer.size_bytes} bytes")
        console.print(f"    Created: {layer.created_at}")
        console.print(f"    Last used: {last_used.get(layer.cache_key) or 'never'}")
        console.print()


@cache_app.command("prune")
def cache_prune(
    keep: Annotated[
        int,
        typer.Option("--keep", "-k", min=0, help="Layers kept per toolchain"),
    ] = 1,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be removed"),
    ] = False,
    json_output: JsonOpt = False,
) -> None:
    """Remove old dependency layers, keeping the newest per toolchain."""
    from dataclasses import asdict

    from imagepipe.builds.cache import LayerStore
    from imagepipe.builds.service import prune_layers
    from imagepipe.db import create_all_tables, get_engine, get_session_factory

    settings = get_settings()
    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        result = prune_layers(
            LayerStore(settings.cache_dir),
            session=session,
            keep_per_toolchain=keep,
            dry_run=dry_run,
        )
        session.commit()

    summary = result.to_operation_result()
    if json_output:
        _print_json(asdict(summary))
        return

    console.print(f"[bold]{summary.message}[/bold]")
    for layer in result.removed:
        console.print(f"  - {layer.cache_key}")
