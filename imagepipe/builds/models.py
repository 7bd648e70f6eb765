"""Build ORM models.

This module defines the DependencyLayer, BuildRecord and Artifact models
for storing dependency layer cache entries, pipeline runs and their
output files in the database.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imagepipe.db import Base
from imagepipe.types import BuildStatus, PipelineStage


class DependencyLayer(Base):
    """ORM model for a cached dependency layer.

    A layer is written once under its cache key and never modified;
    only last_used_at changes on reuse.

    Attributes:
        id: Primary key.
        cache_key: Dependency layer key (unique).
        manifest_hash: Content hash of the staged manifest files.
        library_family: Library family of the toolchain.
        linker: Linker of the toolchain.
        toolchain_image: Tag of the toolchain image that built the layer.
        path: Layer directory.
        digest: Tree hash of the layer contents.
        size_bytes: Total size of the layer.
        input_snapshot: JSON representation of the key inputs.
        created_at: Creation timestamp.
        last_used_at: Last reuse timestamp.
    """

    __tablename__ = "dependency_layers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cache_key: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True, index=True
    )
    manifest_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    library_family: Mapped[str] = mapped_column(String(20), nullable=False)
    linker: Mapped[str] = mapped_column(String(20), nullable=False)
    toolchain_image: Mapped[str | None] = mapped_column(String(255), nullable=True)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    digest: Mapped[str] = mapped_column(String(128), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    input_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    builds: Mapped[list["BuildRecord"]] = relationship(
        "BuildRecord", back_populates="dependency_layer"
    )

    def __repr__(self) -> str:
        """Return string representation of DependencyLayer."""
        return (
            f"<DependencyLayer(id={self.id}, cache_key='{self.cache_key[:23]}...', "
            f"family='{self.library_family}', linker='{self.linker}')>"
        )


class BuildRecord(Base):
    """ORM model for pipeline runs.

    A BuildRecord captures a single-variant pipeline execution: the
    variant axes, metadata, the dependency layer used, the last stage
    reached, the outputs and any error.

    Attributes:
        id: Primary key.
        variant_name: Variant identifier.
        library_family: Variant library family.
        linker: Variant linker.
        metadata_enabled: Whether metadata was propagated.
        status: Build status (pending, running, succeeded, failed).
        stage: Last stage reached.
        source_root: Source tree the build was started from.
        dependency_layer_id: Foreign key to DependencyLayer.
        dependency_key: Dependency layer key.
        is_cache_hit: Whether the dependency layer was reused.
        source_hash: Hash of the copied source tree.
        build_key: Hash of all build inputs.
        input_snapshot: JSON representation of all build inputs.
        commit_hash, short_hash, build_date: Build metadata values.
        binary_sha256: SHA-256 of the service binary.
        image_tag: Runtime image tag.
        image_id: Runtime image ID.
        build_dir: Per-build working directory.
        log_path: Log of the failing or last step.
        error_type: Error code if the build failed.
        error_message: Error message if the build failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Variant
    variant_name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    library_family: Mapped[str] = mapped_column(String(20), nullable=False)
    linker: Mapped[str] = mapped_column(String(20), nullable=False)
    metadata_enabled: Mapped[bool] = mapped_column(nullable=False, default=False)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Inputs
    source_root: Mapped[str] = mapped_column(String(500), nullable=False)
    dependency_layer_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("dependency_layers.id"), nullable=True, index=True
    )
    dependency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)
    source_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    build_key: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )
    input_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )

    # Metadata
    commit_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    short_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    build_date: Mapped[str] = mapped_column(String(64), nullable=False)

    # Outputs
    binary_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    image_tag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    image_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    build_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    dependency_layer: Mapped[DependencyLayer | None] = relationship(
        "DependencyLayer", back_populates="builds"
    )
    artifacts: Mapped[list["Artifact"]] = relationship(
        "Artifact", back_populates="build", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_build_records_variant_status", "variant_name", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, variant='{self.variant_name}', "
            f"status='{self.status}', stage='{self.stage}')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_stage(self, stage: PipelineStage) -> None:
        """Record that a stage completed."""
        self.stage = stage.value

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


class Artifact(Base):
    """ORM model for build output files.

    Attributes:
        id: Primary key.
        build_id: Foreign key to BuildRecord.
        kind: Type of artifact (binary, containerfile, manifest, log).
        relative_path: Path relative to the build directory.
        absolute_path: Full filesystem path.
        filename: Artifact filename.
        size_bytes: File size in bytes.
        sha256: SHA-256 hash of the file.
        labels: JSON array of labels.
    """

    __tablename__ = "artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )
    kind: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    relative_path: Mapped[str] = mapped_column(String(500), nullable=False)
    absolute_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    labels: Mapped[list[str] | None] = mapped_column(JSON, nullable=True, default=list)

    build: Mapped["BuildRecord"] = relationship(
        "BuildRecord", back_populates="artifacts"
    )

    def __repr__(self) -> str:
        """Return string representation of Artifact."""
        return (
            f"<Artifact(id={self.id}, filename='{self.filename}', "
            f"kind='{self.kind}', size={self.size_bytes})>"
        )


__all__ = ["Artifact", "BuildRecord", "DependencyLayer"]
