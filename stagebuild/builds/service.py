"""Pipeline service module.

This module provides the high-level pipeline API:
- run_pipeline(): fingerprint, populate-or-reuse the dependency cache,
  compile the real sources, extract the executable, assemble the image
- Run record persistence and queries

The stages run strictly in order inside one run; each stage's output is a
precondition for the next. The build workspace only lives for the duration
of the artifact pass and extraction.
"""

from __future__ import annotations

import logging
import tempfile
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from stagebuild.builds.artifacts import extract_artifact
from stagebuild.builds.models import BuildRecord
from stagebuild.builds.schema import PipelineConfigError, PipelineSchema
from stagebuild.cache.store import CacheStore
from stagebuild.config import get_settings
from stagebuild.errors import PipelineError
from stagebuild.image.assembler import RuntimeImage, assemble_image
from stagebuild.image.base import SCRATCH, is_remote_ref, resolve_base_image
from stagebuild.image.packages import LocalPackageRepository, PackageInstaller
from stagebuild.manifest.fingerprint import fingerprint_manifest
from stagebuild.toolchain.compiler import CompileResult, CompilerStage, ProjectSources
from stagebuild.toolchain.languages import LanguageProfile, get_language
from stagebuild.toolchain.runner import CommandToolchain, Toolchain
from stagebuild.types import ArtifactInfo, BuildStatus

if TYPE_CHECKING:
    from stagebuild.config import Settings

logger = logging.getLogger(__name__)

DEPENDENCY_CACHE_DIR = "deps"
LOGS_DIR = "logs"


class BuildNotFoundError(Exception):
    """Raised when a run record is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


@dataclass
class PipelineResult:
    """Outcome of a successful pipeline run.

    Attributes:
        name: Image name.
        fingerprint: Manifest fingerprint used for the dependency cache.
        cache_hit: True if the dependency pass was skipped.
        artifact: The extracted executable.
        image: The published runtime image.
        log_dir: Directory with the per-pass toolchain logs.
        dependency_pass: Result of the dependency pass (None on cache hit).
        artifact_pass: Result of the artifact pass.
        build_id: Run record id, when a session was supplied.
    """

    name: str
    fingerprint: str
    cache_hit: bool
    artifact: ArtifactInfo
    image: RuntimeImage
    log_dir: Path
    dependency_pass: CompileResult | None
    artifact_pass: CompileResult
    build_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""

        def _pass(result: CompileResult | None) -> dict[str, Any] | None:
            if result is None:
                return None
            return {
                "log_path": str(result.log_path),
                "duration": result.duration,
                "compiled_units": [asdict(u) for u in result.compiled_units],
                "removed_stub_files": result.removed_stub_files,
            }

        return {
            "name": self.name,
            "fingerprint": self.fingerprint,
            "cache_hit": self.cache_hit,
            "artifact": asdict(self.artifact),
            "image": self.image.to_dict(),
            "log_dir": str(self.log_dir),
            "dependency_pass": _pass(self.dependency_pass),
            "artifact_pass": _pass(self.artifact_pass),
            "build_id": self.build_id,
        }


def open_cache_store(settings: Settings | None = None) -> CacheStore:
    """Return the dependency cache store configured by ``settings``."""
    if settings is None:
        settings = get_settings()
    return CacheStore(
        settings.cache_dir / DEPENDENCY_CACHE_DIR,
        lock_timeout=settings.lock_timeout,
    )


def _resolve(base_path: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_path / path


def _resolve_base_ref(base_path: Path, ref: str) -> str:
    if ref == SCRATCH or is_remote_ref(ref):
        return ref
    return str(_resolve(base_path, ref))


def _resolve_lockfile(
    pipeline: PipelineSchema,
    base_path: Path,
    manifest_path: Path,
    language: LanguageProfile,
) -> Path | None:
    """Return the declared lock file, else the one beside the manifest."""
    if pipeline.lockfile:
        return _resolve(base_path, pipeline.lockfile)
    if language.lockfile_name:
        sibling = manifest_path.parent / language.lockfile_name
        if sibling.is_file():
            return sibling
    return None


def _default_installer(
    pipeline: PipelineSchema, base_path: Path, settings: Settings
) -> PackageInstaller | None:
    if pipeline.package_repo:
        return LocalPackageRepository(_resolve(base_path, pipeline.package_repo))
    if settings.package_repo is not None:
        return LocalPackageRepository(settings.package_repo)
    return None


def _new_run_id(name: str) -> str:
    return f"{name}_{datetime.now():%Y%m%dT%H%M%S}_{uuid.uuid4().hex[:8]}"


def run_pipeline(
    pipeline: PipelineSchema,
    base_path: Path,
    settings: Settings | None = None,
    toolchain: Toolchain | None = None,
    package_installer: PackageInstaller | None = None,
    session: Session | None = None,
    force_rebuild: bool = False,
    http_client: httpx.Client | None = None,
) -> PipelineResult:
    """Run the whole pipeline for one pipeline file.

    This is the main entry point. It:
    1. Fingerprints the manifest
    2. Looks up the dependency cache; on a miss, populates it with the
       dependency pass over a stub program
    3. Runs the artifact pass over the real sources on top of the cache
    4. Extracts the single executable and discards the workspace
    5. Resolves the base image and assembles the runtime image

    Args:
        pipeline: Validated pipeline file.
        base_path: Directory that relative paths in ``pipeline`` resolve against.
        settings: Application settings.
        toolchain: Toolchain to run (defaults to the language's build command).
        package_installer: Runtime library installer (defaults to the
            pipeline's or the settings' local package repository).
        session: Database session; a BuildRecord is written when given.
        force_rebuild: Drop any existing cache entry for the fingerprint.
        http_client: HTTPX client for remote base images.

    Returns:
        PipelineResult describing the published image.

    Raises:
        PipelineConfigError: If the pipeline names an unknown language.
        PipelineError: If any stage fails. No image is published.
    """
    if settings is None:
        settings = get_settings()

    try:
        language = get_language(pipeline.language)
    except KeyError as e:
        raise PipelineConfigError(str(e), code="unknown_language") from e

    if toolchain is None:
        toolchain = CommandToolchain(language.build_command)
    if package_installer is None:
        package_installer = _default_installer(pipeline, base_path, settings)

    manifest_path = _resolve(base_path, pipeline.manifest)
    project = ProjectSources(
        manifest_path=manifest_path,
        source_dir=_resolve(base_path, pipeline.source),
        lockfile_path=_resolve_lockfile(pipeline, base_path, manifest_path, language),
        source_dest=pipeline.source_dest or "src",
    )
    log_dir = settings.cache_dir / LOGS_DIR / _new_run_id(pipeline.name)

    record: BuildRecord | None = None
    if session is not None:
        record = BuildRecord(name=pipeline.name, log_dir=str(log_dir))
        session.add(record)
        record.mark_running()
        session.flush()
        logger.info("Created build record %d", record.id)

    fingerprint: str | None = None
    try:
        fingerprint, manifest = fingerprint_manifest(
            project.manifest_path, project.lockfile_path, pipeline.build_options
        )
        if record is not None:
            record.fingerprint = fingerprint

        cache = open_cache_store(settings)
        compiler = CompilerStage(
            toolchain, language, cache, log_dir, timeout=settings.build_timeout
        )

        if force_rebuild and cache.remove(fingerprint):
            logger.info("Forced rebuild: dropped cache entry %s", fingerprint[:23])

        dependency_result: CompileResult | None = None
        if cache.lookup(fingerprint) is None:
            populated: list[CompileResult] = []

            def run_dependency_pass(workspace: Path) -> None:
                populated.append(
                    compiler.dependency_pass(workspace, project, manifest, fingerprint)
                )

            cache.populate(
                fingerprint,
                manifest,
                run_dependency_pass,
                language.cached_dirs,
                cached_files=language.cached_files,
            )
            dependency_result = populated[0] if populated else None
        cache_hit = dependency_result is None

        work_dir = settings.work_dir
        if work_dir is not None:
            work_dir.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(
            prefix="stagebuild_artifact_", dir=work_dir
        ) as artifact_dir:
            with tempfile.TemporaryDirectory(
                prefix="stagebuild_ws_", dir=work_dir
            ) as ws:
                workspace = Path(ws)
                artifact_result = compiler.artifact_pass(
                    workspace, project, manifest, fingerprint
                )
                artifact = extract_artifact(
                    workspace, manifest, language, Path(artifact_dir)
                )
            # The build workspace is gone; only the extracted copy remains

            base = resolve_base_image(
                _resolve_base_ref(base_path, pipeline.base_image),
                settings.cache_dir,
                client=http_client,
                expected_sha256=pipeline.base_image_sha256,
                timeout=settings.download_timeout,
            )
            image = assemble_image(
                name=pipeline.name,
                artifact=artifact,
                base=base,
                libraries=list(pipeline.runtime_libraries),
                installer=package_installer,
                output_dir=settings.output_dir,
                bin_dir=pipeline.bin_dir,
                fingerprint=fingerprint,
                package=manifest.name,
                export_tar=pipeline.export_tar,
            )
            shipped = image.artifact or artifact

    except PipelineError as e:
        if e.fingerprint is None:
            e.fingerprint = fingerprint
        logger.error("Pipeline %s failed at %s: %s", pipeline.name, e.stage.value, e)
        if record is not None and session is not None:
            record.mark_failed(error_code=e.code, stage=e.stage.value, message=str(e))
            session.flush()
        raise

    if record is not None and session is not None:
        record.is_cache_hit = cache_hit
        record.artifact_sha256 = shipped.sha256
        record.image_id = image.image_id
        record.image_path = str(image.path)
        record.mark_succeeded()
        session.flush()

    logger.info(
        "Pipeline %s succeeded (cache %s), image %s",
        pipeline.name,
        "hit" if cache_hit else "miss",
        image.path,
    )
    return PipelineResult(
        name=pipeline.name,
        fingerprint=fingerprint,
        cache_hit=cache_hit,
        artifact=shipped,
        image=image,
        log_dir=log_dir,
        dependency_pass=dependency_result,
        artifact_pass=artifact_result,
        build_id=record.id if record is not None else None,
    )


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a run record by ID.

    Raises:
        BuildNotFoundError: If the record does not exist.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    name: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List run records, newest first.

    Args:
        session: Database session.
        name: Filter by image name.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances.
    """
    stmt = select(BuildRecord)

    if name is not None:
        stmt = stmt.where(BuildRecord.name == name)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildNotFoundError",
    "PipelineResult",
    "get_build",
    "list_builds",
    "open_cache_store",
    "run_pipeline",
]
