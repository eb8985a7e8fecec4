"""Tests for the base filesystem provider.

Remote base images use mocked HTTP responses.
"""

import hashlib
import io
import os
import tarfile
from pathlib import Path

import httpx
import pytest
import respx

from stagebuild.errors import BaseImageUnavailable
from stagebuild.image.base import (
    SCRATCH,
    download_base_image,
    extract_archive,
    materialize_base,
    resolve_base_image,
)

BASE_URL = "https://images.example.com/debian-slim.tar.gz"


def make_tarball(files: dict[str, bytes]) -> bytes:
    """Build a gzipped tarball in memory."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


class TestResolveLocal:
    """Tests for scratch and local base images."""

    def test_scratch(self, tmp_path: Path):
        """scratch resolves to an empty base."""
        base = resolve_base_image(SCRATCH, tmp_path)
        assert base.kind == "scratch"
        rootfs = tmp_path / "rootfs"
        materialize_base(base, rootfs)
        assert list(rootfs.iterdir()) == []

    def test_directory(self, tmp_path: Path):
        """A local directory is copied into the rootfs."""
        tree = tmp_path / "base"
        (tree / "etc").mkdir(parents=True)
        (tree / "etc" / "os-release").write_text("ID=test\n")

        base = resolve_base_image(str(tree), tmp_path / "cache")
        rootfs = tmp_path / "rootfs"
        materialize_base(base, rootfs)

        assert base.kind == "directory"
        assert (rootfs / "etc" / "os-release").read_text() == "ID=test\n"

    def test_directory_digest(self, tmp_path: Path):
        """A directory base carries a digest of its tree."""
        tree = tmp_path / "base"
        (tree / "etc").mkdir(parents=True)
        (tree / "etc" / "os-release").write_text("ID=test\n")
        before = resolve_base_image(str(tree), tmp_path / "cache").sha256

        (tree / "etc" / "os-release").write_text("ID=test\nVERSION_ID=2\n")
        after = resolve_base_image(str(tree), tmp_path / "cache").sha256

        assert before is not None
        assert before != after

    def test_archive_checksum(self, tmp_path: Path):
        """A local tarball is verified against the pinned checksum."""
        archive = tmp_path / "base.tar.gz"
        archive.write_bytes(make_tarball({"etc/hostname": b"box\n"}))
        digest = hashlib.sha256(archive.read_bytes()).hexdigest()

        base = resolve_base_image(str(archive), tmp_path, expected_sha256=digest)
        assert base.sha256 == digest

        with pytest.raises(BaseImageUnavailable):
            resolve_base_image(str(archive), tmp_path, expected_sha256="0" * 64)

    def test_missing(self, tmp_path: Path):
        """An unresolvable reference fails."""
        with pytest.raises(BaseImageUnavailable):
            resolve_base_image(str(tmp_path / "nope"), tmp_path)


class TestExtractArchive:
    """Tests for extract_archive."""

    def test_extracts(self, tmp_path: Path):
        """Members are extracted under the destination."""
        archive = tmp_path / "base.tar.gz"
        archive.write_bytes(make_tarball({"usr/lib/libc.so": b"libc"}))
        extract_archive(archive, tmp_path / "rootfs")
        assert (tmp_path / "rootfs" / "usr" / "lib" / "libc.so").read_bytes() == b"libc"

    def test_rejects_traversal(self, tmp_path: Path):
        """Members escaping the destination are refused."""
        archive = tmp_path / "evil.tar.gz"
        archive.write_bytes(make_tarball({"../escape": b"x"}))
        with pytest.raises(BaseImageUnavailable):
            extract_archive(archive, tmp_path / "rootfs")
        assert not (tmp_path / "escape").exists()

    def test_absolute_symlink(self, tmp_path: Path):
        """Root filesystems may link to absolute in-image paths."""
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            link = tarfile.TarInfo("etc/localtime")
            link.type = tarfile.SYMTYPE
            link.linkname = "/usr/share/zoneinfo/Etc/UTC"
            tar.addfile(link)
        archive = tmp_path / "base.tar.gz"
        archive.write_bytes(buf.getvalue())

        extract_archive(archive, tmp_path / "rootfs")

        localtime = tmp_path / "rootfs" / "etc" / "localtime"
        assert localtime.is_symlink()
        assert os.readlink(localtime) == "/usr/share/zoneinfo/Etc/UTC"

    def test_corrupt(self, tmp_path: Path):
        """A corrupt archive fails with BaseImageUnavailable."""
        archive = tmp_path / "bad.tar.gz"
        archive.write_bytes(b"not a tarball")
        with pytest.raises(BaseImageUnavailable):
            extract_archive(archive, tmp_path / "rootfs")


class TestRemote:
    """Tests for remote base images."""

    @respx.mock
    def test_download_and_reuse(self, tmp_path: Path):
        """A remote tarball is downloaded once and then reused from cache."""
        content = make_tarball({"etc/hostname": b"remote\n"})
        route = respx.get(BASE_URL).mock(
            return_value=httpx.Response(200, content=content)
        )
        digest = hashlib.sha256(content).hexdigest()

        with httpx.Client() as client:
            first = resolve_base_image(
                BASE_URL, tmp_path, client=client, expected_sha256=digest
            )
            second = resolve_base_image(
                BASE_URL, tmp_path, client=client, expected_sha256=digest
            )

        assert route.call_count == 1
        assert first.kind == "archive"
        assert first.path == second.path
        assert first.path.read_bytes() == content

    @respx.mock
    def test_http_error(self, tmp_path: Path):
        """HTTP errors surface as BaseImageUnavailable."""
        respx.get(BASE_URL).mock(return_value=httpx.Response(404))
        with httpx.Client() as client:
            with pytest.raises(BaseImageUnavailable) as exc_info:
                download_base_image(client, BASE_URL, tmp_path / "base.tar.gz")
        assert "404" in str(exc_info.value)
        assert not (tmp_path / "base.tar.gz").exists()

    @respx.mock
    def test_checksum_mismatch(self, tmp_path: Path):
        """A checksum mismatch leaves no partial download behind."""
        respx.get(BASE_URL).mock(return_value=httpx.Response(200, content=b"data"))
        dest = tmp_path / "base.tar.gz"
        with httpx.Client() as client:
            with pytest.raises(BaseImageUnavailable):
                download_base_image(client, BASE_URL, dest, expected_sha256="0" * 64)
        assert not dest.exists()
        assert not dest.with_name(dest.name + ".part").exists()

    @respx.mock
    def test_network_error(self, tmp_path: Path):
        """Connection failures surface as BaseImageUnavailable."""
        respx.get(BASE_URL).mock(side_effect=httpx.ConnectError("refused"))
        with httpx.Client() as client:
            with pytest.raises(BaseImageUnavailable):
                download_base_image(client, BASE_URL, tmp_path / "base.tar.gz")

    def test_remote_must_be_tarball(self, tmp_path: Path):
        """Remote references must name a tarball."""
        with pytest.raises(BaseImageUnavailable):
            resolve_base_image("https://images.example.com/base.iso", tmp_path)
