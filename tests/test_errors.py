"""Tests for the pipeline error taxonomy."""

from stagebuild.errors import (
    AmbiguousArtifact,
    ArtifactNotFound,
    CacheLockTimeout,
    CacheNotPopulated,
    ManifestUnreadable,
    MissingRuntimeLibrary,
    PipelineError,
    UnresolvedDependency,
)
from stagebuild.types import Stage


class TestCategories:
    """Errors should tell manifest, source and packaging problems apart."""

    def test_manifest_problem(self):
        """Manifest errors belong to the manifest category."""
        err = ManifestUnreadable("bad toml", path="Cargo.toml")
        assert err.stage == Stage.FINGERPRINT
        assert err.category == "manifest"

    def test_source_problem(self):
        """Source-side dependency errors belong to the source category."""
        err = UnresolvedDependency(["serde"], stage=Stage.ARTIFACT_PASS)
        assert err.category == "source"
        assert err.names == ["serde"]

    def test_packaging_problem(self):
        """Missing runtime libraries belong to the packaging category."""
        err = MissingRuntimeLibrary(["libssl"])
        assert err.stage == Stage.ASSEMBLE
        assert err.category == "packaging"

    def test_extract_errors(self):
        """Extraction errors are attributed to the extract stage."""
        assert ArtifactNotFound("gone").stage == Stage.EXTRACT
        ambiguous = AmbiguousArtifact(["a", "b"])
        assert ambiguous.stage == Stage.EXTRACT
        assert "a, b" in str(ambiguous)


class TestToDict:
    """Tests for structured error output."""

    def test_includes_context(self):
        """to_dict should carry code, stage, category and context."""
        err = CacheNotPopulated("sha256:abc")
        data = err.to_dict()

        assert data["code"] == "cache_not_populated"
        assert data["stage"] == "artifact_pass"
        assert data["category"] == "source"
        assert data["fingerprint"] == "sha256:abc"
        assert "path" not in data

    def test_all_are_pipeline_errors(self):
        """Every taxonomy member should derive from PipelineError."""
        for err in (
            ManifestUnreadable("x"),
            CacheNotPopulated("sha256:x"),
            ArtifactNotFound("x"),
            MissingRuntimeLibrary(["x"]),
            CacheLockTimeout("sha256:x", 1.0),
        ):
            assert isinstance(err, PipelineError)
            assert err.code
