"""
Test suite for tarball_adapter.py
Builds real archives in a temporary directory and installs them into a fake root
"""

import io
import json
import os
import tarfile
from unittest.mock import Mock, patch

import pytest

from upm.adapters.tarball_adapter import TarballAdapter, sanitize_member_path, validate_tarball_name
from upm.errors import FetchError, InstallError, NotFound, RemoveError, UnpackError
from upm.models import DependencyEdge, Package, Repository


def make_tarball(path, files=None, dirs=(), symlinks=None, modes=None):
    """Write a .tar.gz with the given {name: bytes} files, directories and {name: target} links"""
    modes = modes or {}
    with tarfile.open(path, "w:gz") as tf:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tf.addfile(info)
        for name, data in (files or {}).items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = modes.get(name, 0o644)
            tf.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tf.addfile(info)
    return path


@pytest.fixture
def root(tmp_path):
    path = tmp_path / "root"
    path.mkdir()
    return path


@pytest.fixture
def adapter(tmp_path, root):
    return TarballAdapter(root, tmp_path / "state")


def _package(name="hello", version="1.0"):
    return Package(id=f"tar:{name}", name=name, version=version)


def _install(adapter, tmp_path, version, files, **kwargs):
    artifact = make_tarball(tmp_path / f"hello-{version}.tar.gz", files, **kwargs)
    applied = adapter.apply(adapter.stage(_package(version=version), artifact))
    return applied


class TestNames:

    @pytest.mark.security
    def test_validate_tarball_name(self):
        assert validate_tarball_name("hello")
        assert validate_tarball_name("libfoo2.0+dfsg")

        assert not validate_tarball_name("../hello")
        assert not validate_tarball_name("hello/world")
        assert not validate_tarball_name(".hidden")
        assert not validate_tarball_name("")

    @pytest.mark.security
    def test_sanitize_member_path(self):
        assert sanitize_member_path("./usr//bin/hello") == "usr/bin/hello"
        assert sanitize_member_path("./") == ""

        for unsafe in ("/etc/passwd", "../etc/passwd", "usr/../../etc/passwd", "C:\\Windows"):
            with pytest.raises(UnpackError):
                sanitize_member_path(unsafe)


class TestIndex:

    @pytest.fixture
    def repository(self, tmp_path):
        repo_dir = tmp_path / "repo"
        repo_dir.mkdir()
        index = {"packages": [
            {"name": "hello", "version": "1.2", "download_url": "hello-1.2.tar.gz", "description": "Greeter",
             "dependencies": [
                 {"name": "libfoo", "constraint": ">=2"},
                 {"name": "curl", "backend": "apt"},
                 {"name": "hello-docs", "optional": True},
             ]},
            {"name": "hello", "version": "1.10", "download_url": "https://mirror.example/hello-1.10.tar.gz"},
            {"name": "bad name", "version": "1"},
            {"name": "noversion"},
        ]}
        (repo_dir / "index.json").write_text(json.dumps(index))
        return Repository("tar", str(repo_dir / "index.json"), "local")

    @pytest.mark.unit
    def test_list_packages(self, adapter, repository, tmp_path):
        packages = adapter.list_packages(repository)

        assert [(p.name, p.version) for p in packages] == [("hello", "1.2"), ("hello", "1.10")]
        assert packages[0].download_url == str(tmp_path / "repo" / "hello-1.2.tar.gz")
        assert packages[1].download_url == "https://mirror.example/hello-1.10.tar.gz"
        assert packages[0].repository == "local"

    @pytest.mark.unit
    def test_fetch_metadata_picks_newest(self, adapter, repository):
        assert adapter.fetch_metadata(repository, "hello").version == "1.10"
        with pytest.raises(NotFound):
            adapter.fetch_metadata(repository, "noversion")

    @pytest.mark.unit
    def test_list_dependencies(self, adapter, repository):
        adapter.list_packages(repository)

        edges = adapter.list_dependencies(_package(version="1.2"))

        assert edges == [
            DependencyEdge("tar:hello", "tar:libfoo", ">=2"),
            DependencyEdge("tar:hello", "apt:curl"),
            DependencyEdge("tar:hello", "tar:hello-docs", None, True),
        ]
        assert adapter.list_dependencies(_package(version="9.9")) == []

    @pytest.mark.unit
    def test_search(self, adapter, repository):
        adapter.list_packages(repository)
        assert {p.version for p in adapter.search("GREET")} == {"1.2"}

    @pytest.mark.unit
    def test_missing_index(self, adapter, tmp_path):
        with pytest.raises(FetchError):
            adapter.list_packages(Repository("tar", str(tmp_path / "missing.json")))

    @pytest.mark.unit
    @patch('upm.adapters.tarball_adapter.requests.get')
    def test_remote_index_resolves_relative_urls(self, mock_get, adapter):
        mock_get.return_value = Mock(json=Mock(return_value={
            "packages": [{"name": "hello", "version": "1.0", "download_url": "pool/hello-1.0.tar.gz"}]
        }))

        packages = adapter.list_packages(Repository("tar", "https://example.com/repo/index.json"))

        assert packages[0].download_url == "https://example.com/repo/pool/hello-1.0.tar.gz"
        mock_get.assert_called_once_with("https://example.com/repo/index.json", timeout=30.0)


class TestInstall:

    @pytest.mark.unit
    def test_stage_builds_manifest(self, adapter, tmp_path):
        artifact = make_tarball(tmp_path / "hello.tar.gz", {"usr/bin/hello": b"#!/bin/sh\necho hi\n"},
                                dirs=["usr", "usr/bin"], symlinks={"usr/bin/hi": "hello"},
                                modes={"usr/bin/hello": 0o755})

        staged = adapter.stage(_package(), artifact)

        entries = {entry.path: entry for entry in staged.files}
        assert set(entries) == {"/usr", "/usr/bin", "/usr/bin/hello", "/usr/bin/hi"}
        assert entries["/usr/bin/hello"].permissions == 0o755
        assert entries["/usr/bin/hello"].digest is not None
        assert entries["/usr/bin/hi"].file_type == "symlink"
        assert (staged.staging_dir / "usr/bin/hello").is_file()

    @pytest.mark.unit
    def test_stage_without_artifact(self, adapter, tmp_path):
        with pytest.raises(UnpackError):
            adapter.stage(_package(), None)
        with pytest.raises(UnpackError):
            adapter.stage(_package(), tmp_path / "missing.tar.gz")

    @pytest.mark.unit
    def test_corrupt_archive(self, adapter, tmp_path):
        artifact = tmp_path / "broken.tar.gz"
        artifact.write_bytes(b"not a tarball")

        with pytest.raises(UnpackError) as exc_info:
            adapter.stage(_package(), artifact)
        assert exc_info.value.package_id == "tar:hello"

    @pytest.mark.unit
    def test_apply_and_revert_fresh_install(self, adapter, tmp_path, root):
        applied = _install(adapter, tmp_path, "1.0", {"usr/bin/hello": b"v1"},
                           symlinks={"usr/bin/hi": "hello"}, modes={"usr/bin/hello": 0o755})

        assert (root / "usr/bin/hello").read_bytes() == b"v1"
        assert os.stat(root / "usr/bin/hello").st_mode & 0o777 == 0o755
        assert os.readlink(root / "usr/bin/hi") == "hello"
        assert adapter.read_manifest("hello")["version"] == "1.0"
        assert set(applied.created_dirs) == {str(root / "usr"), str(root / "usr/bin")}
        assert list(adapter.staging_root.iterdir()) == []

        adapter.revert(applied)

        assert list(root.iterdir()) == []
        assert adapter.read_manifest("hello") is None
        assert not applied.backup_dir.exists()

    @pytest.mark.unit
    def test_revert_restores_overwritten_file(self, adapter, tmp_path, root):
        (root / "etc").mkdir()
        (root / "etc/hosts").write_text("original")

        applied = _install(adapter, tmp_path, "1.0", {"etc/hosts": b"replaced"})
        assert (root / "etc/hosts").read_text() == "replaced"

        adapter.revert(applied)

        assert (root / "etc/hosts").read_text() == "original"
        assert (root / "etc").is_dir()

    @pytest.mark.unit
    def test_failed_apply_leaves_no_temporary_files(self, adapter, tmp_path, root):
        adapter.discard(_install(adapter, tmp_path, "1.0", {"usr/bin/hello": b"v1"}))
        artifact = make_tarball(tmp_path / "hello-2.0.tar.gz", {"usr/bin/hello": b"v2"})
        staged = adapter.stage(_package(version="2.0"), artifact)

        with patch('upm.adapters.tarball_adapter.os.replace', side_effect=OSError("No space left on device")):
            with pytest.raises(InstallError) as exc_info:
                adapter.apply(staged)

        assert not staged.staging_dir.exists()
        assert sorted(p.name for p in (root / "usr/bin").iterdir()) == ["hello"]

        adapter.revert(exc_info.value.partial)

        assert (root / "usr/bin/hello").read_bytes() == b"v1"
        assert adapter.read_manifest("hello")["version"] == "1.0"

    @pytest.mark.integration
    def test_upgrade_then_revert(self, adapter, tmp_path, root):
        first = _install(adapter, tmp_path, "1.0", {"usr/bin/hello": b"v1", "usr/share/hello/old.txt": b"old"})
        adapter.discard(first)

        second = _install(adapter, tmp_path, "2.0", {"usr/bin/hello": b"v2"})
        assert (root / "usr/bin/hello").read_bytes() == b"v2"
        assert not (root / "usr/share/hello/old.txt").exists()
        assert adapter.read_manifest("hello")["version"] == "2.0"

        adapter.revert(second)

        assert (root / "usr/bin/hello").read_bytes() == b"v1"
        assert (root / "usr/share/hello/old.txt").read_bytes() == b"old"
        assert adapter.read_manifest("hello")["version"] == "1.0"

    @pytest.mark.integration
    def test_upgrade_then_discard_then_remove(self, adapter, tmp_path, root):
        adapter.discard(_install(adapter, tmp_path, "1.0", {"usr/bin/hello": b"v1", "usr/share/hello/old.txt": b"old"}))
        second = _install(adapter, tmp_path, "2.0", {"usr/bin/hello": b"v2"})

        adapter.discard(second)
        assert not second.backup_dir.exists()

        adapter.remove(_package(version="2.0"))

        assert list(root.iterdir()) == []
        assert adapter.read_manifest("hello") is None


class TestRemove:

    @pytest.mark.unit
    def test_remove_keeps_preexisting_directories(self, adapter, tmp_path, root):
        (root / "etc").mkdir()
        adapter.discard(_install(adapter, tmp_path, "1.0", {"etc/hello.conf": b"x", "opt/hello/bin": b"y"}))

        adapter.remove(_package())

        assert (root / "etc").is_dir()
        assert not (root / "etc/hello.conf").exists()
        assert not (root / "opt").exists()

    @pytest.mark.unit
    def test_remove_absent_is_noop(self, adapter):
        adapter.remove(_package("ghost"))

    @pytest.mark.security
    def test_remove_invalid_name(self, adapter):
        with pytest.raises(RemoveError):
            adapter.remove(_package("../../etc"))


class TestArchiveSecurity:

    @pytest.mark.security
    @pytest.mark.parametrize("files,symlinks", [
        ({"../../evil": b"x"}, None),
        ({"/etc/evil": b"x"}, None),
        ({"usr/bin/ok": b"x", "usr/../../evil": b"x"}, None),
        (None, {"usr/lib/link": "../../../etc/passwd"}),
        (None, {"usr/lib/link": "/etc/shadow"}),
    ])
    def test_unsafe_archives_rejected(self, adapter, tmp_path, root, files, symlinks):
        artifact = make_tarball(tmp_path / "bad.tar.gz", files, symlinks=symlinks)

        with pytest.raises(UnpackError, match="Unsafe archive member"):
            adapter.stage(_package("bad"), artifact)

        assert not (tmp_path / "evil").exists()
        assert not (adapter.staging_root / "bad-1.0").exists()
        assert list(root.iterdir()) == []
