"""
Tarball backend adapter for Unified Package Manager
Installs plain .tar/.tar.gz archives described by a JSON repository index

Index format (repository.url points at it, local path or http(s)):

    {"packages": [{"name": "hello", "version": "1.0", "download_url": "hello-1.0.tar.gz",
                   "checksum": "<sha256>", "dependencies": [{"name": "libfoo", "constraint": ">=2"}]}]}
"""

import json
import os
import re
import shutil
import tarfile
import tempfile
from dataclasses import asdict
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests

from upm.adapters.base import BackendAdapter
from upm.errors import FetchError, InstallError, NotFound, RemoveError, RevertError, UnpackError
from upm.fetcher import calculate_checksum
from upm.logger import get_logger
from upm.models import Applied, DependencyEdge, FileEntry, Package, Repository, StagedContents, merge_edges

_NAME_RE = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9+._-]*$')


def validate_tarball_name(name: str) -> bool:
    """Validate a tarball package name (also used as a manifest file name)"""
    if not name or len(name) > 200:
        return False
    return bool(_NAME_RE.match(name))


def sanitize_member_path(name: str) -> str:
    """
    Normalize an archive member path relative to the install root

    Raises:
        UnpackError: If the path is absolute or escapes the root
    """
    if name.startswith("/") or re.match(r'^[a-zA-Z]:', name):
        raise UnpackError(f"Unsafe archive member (absolute path): {name}")
    parts = [part for part in PurePosixPath(name).parts if part not in (".", "")]
    if ".." in parts:
        raise UnpackError(f"Unsafe archive member (..): {name}")
    return "/".join(parts)


class TarballAdapter(BackendAdapter):
    """Filesystem adapter: unpacks archives into install_root with backups"""

    backend_id = "tar"

    def __init__(self, install_root, state_dir, timeout: float = 30.0):
        self.install_root = Path(install_root)
        self.state_dir = Path(state_dir) / self.backend_id
        self.manifest_dir = self.state_dir / "manifests"
        self.staging_root = self.state_dir / "staging"
        self.backup_root = self.state_dir / "backups"
        self.timeout = timeout
        self.logger = get_logger()
        self._indexes: Dict[str, List[dict]] = {}
        self._entries: Dict[Tuple[str, str], dict] = {}

    # ==================== Repository Index ====================

    def _load_index(self, repository: Repository, reload: bool = False) -> List[dict]:
        if not reload and repository.url in self._indexes:
            return self._indexes[repository.url]

        try:
            if urlparse(repository.url).scheme in ('http', 'https'):
                response = requests.get(repository.url, timeout=self.timeout)
                response.raise_for_status()
                data = response.json()
            else:
                with open(repository.url, 'r') as f:
                    data = json.load(f)
        except (requests.RequestException, OSError, ValueError) as e:
            raise FetchError(f"Failed to load index {repository.url}: {e}") from e

        entries = []
        for entry in data.get("packages", []):
            if not validate_tarball_name(entry.get("name", "")) or not entry.get("version"):
                self.logger.log_warning(f"Skipping invalid index entry in {repository.url}: {entry!r}")
                continue
            entry = dict(entry, repository=repository.name)
            if entry.get("download_url"):
                entry["download_url"] = self._resolve_url(repository.url, entry["download_url"])
            entries.append(entry)
            self._entries[(self.package_id(entry["name"]), str(entry["version"]))] = entry

        self._indexes[repository.url] = entries
        return entries

    @staticmethod
    def _resolve_url(index_url: str, download_url: str) -> str:
        if urlparse(download_url).scheme or os.path.isabs(download_url):
            return download_url
        if urlparse(index_url).scheme in ('http', 'https'):
            return urljoin(index_url, download_url)
        return os.path.join(os.path.dirname(os.path.abspath(index_url)), download_url)

    def _to_package(self, entry: dict) -> Package:
        return Package(
            id=self.package_id(entry["name"]),
            name=entry["name"],
            version=str(entry["version"]),
            description=entry.get("description", ""),
            repository=entry.get("repository"),
            download_url=entry.get("download_url"),
            license=entry.get("license"),
            size_bytes=entry.get("size_bytes"),
            checksum=entry.get("checksum"),
        )

    def list_packages(self, repository: Repository) -> List[Package]:
        return [self._to_package(entry) for entry in self._load_index(repository, reload=True)]

    def fetch_metadata(self, repository: Optional[Repository], name: str) -> Package:
        if repository is not None:
            self._load_index(repository)
        versions = [entry for (package_id, _), entry in self._entries.items()
                    if package_id == self.package_id(name)]
        if not versions:
            raise NotFound(self.package_id(name))
        best = self.version_comparator.sorted([str(e["version"]) for e in versions], reverse=True)[0]
        return self._to_package(self._entries[(self.package_id(name), best)])

    def list_dependencies(self, package: Package) -> List[DependencyEdge]:
        entry = self._entries.get(package.key)
        if entry is None:
            return []
        edges = []
        for dep in entry.get("dependencies", []):
            backend = dep.get("backend", self.backend_id)
            edges.append(DependencyEdge(
                package_id=package.id,
                dependency_id=f"{backend}:{dep['name']}",
                version_constraint=dep.get("constraint"),
                is_optional=bool(dep.get("optional", False)),
            ))
        return merge_edges(edges)

    def search(self, query: str) -> List[Package]:
        query = query.lower()
        return [self._to_package(entry) for entry in self._entries.values()
                if query in entry["name"].lower() or query in entry.get("description", "").lower()]

    # ==================== Stage / Apply ====================

    def stage(self, package: Package, artifact: Optional[Path]) -> StagedContents:
        if artifact is None or not Path(artifact).is_file():
            raise UnpackError(f"No artifact to unpack for {package}", package.id)

        staging_dir = self.staging_root / f"{package.name}-{package.version}"
        if staging_dir.exists():
            shutil.rmtree(staging_dir)
        staging_dir.mkdir(parents=True)

        files: List[FileEntry] = []
        try:
            with tarfile.open(artifact, "r:*") as tf:
                for member in tf.getmembers():
                    rel = sanitize_member_path(member.name)
                    if not rel:
                        continue
                    files.append(self._extract_member(tf, member, rel, staging_dir))
        except UnpackError as e:
            shutil.rmtree(staging_dir, ignore_errors=True)
            e.package_id = package.id
            raise
        except (tarfile.TarError, OSError) as e:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise UnpackError(f"Failed to unpack {artifact}: {e}", package.id) from e

        self.logger.log_debug(f"Staged {package}: {len(files)} entries in {staging_dir}")
        return StagedContents(package=package, files=files, staging_dir=staging_dir, artifact=Path(artifact))

    def _extract_member(self, tf: tarfile.TarFile, member: tarfile.TarInfo, rel: str,
                        staging_dir: Path) -> FileEntry:
        dest = staging_dir / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        mode = member.mode & 0o7777
        owner = member.uname or "root"

        if member.isdir():
            dest.mkdir(exist_ok=True)
            return FileEntry("/" + rel, mode, owner, "dir")
        if member.issym():
            link = member.linkname
            if link.startswith("/") or ".." in PurePosixPath(link).parts:
                raise UnpackError(f"Unsafe archive member (link outside root): {member.name} -> {link}")
            os.symlink(link, dest)
            return FileEntry("/" + rel, 0o777, owner, "symlink")
        if member.isfile():
            with tf.extractfile(member) as src, open(dest, 'wb') as out:
                shutil.copyfileobj(src, out)
            return FileEntry("/" + rel, mode, owner, "file", calculate_checksum(dest))
        raise UnpackError(f"Unsupported archive member type: {member.name}")

    def _dest(self, path: str) -> Path:
        return self.install_root / path.lstrip("/")

    def _manifest_path(self, name: str) -> Path:
        if not validate_tarball_name(name):
            raise ValueError(f"Invalid package name: {name}")
        return self.manifest_dir / f"{name}.json"

    def read_manifest(self, name: str) -> Optional[dict]:
        path = self._manifest_path(name)
        if not path.exists():
            return None
        with open(path, 'r') as f:
            return json.load(f)

    def apply(self, staged: StagedContents) -> Applied:
        package = staged.package
        self.backup_root.mkdir(parents=True, exist_ok=True)
        backup_dir = Path(tempfile.mkdtemp(prefix=f"{package.name}-", dir=self.backup_root))
        applied = Applied(package=package, backup_dir=backup_dir)

        try:
            previous = self.read_manifest(package.name)
            manifest_path = self._manifest_path(package.name)
            if manifest_path.exists():
                shutil.copy2(manifest_path, backup_dir / "manifest.json")

            new_paths = {entry.path for entry in staged.files}
            for entry in sorted(staged.files, key=lambda e: (e.file_type != "dir", e.path)):
                self._install_entry(staged, entry, applied)

            # Files owned by the replaced version but absent from this one
            for old in (previous or {}).get("files", []):
                if old["path"] not in new_paths and old["file_type"] != "dir":
                    dest = self._dest(old["path"])
                    if dest.exists() or dest.is_symlink():
                        self._backup(dest, old["path"], backup_dir)
                        dest.unlink()

            self.manifest_dir.mkdir(parents=True, exist_ok=True)
            with open(manifest_path, 'w') as f:
                json.dump({
                    "id": package.id,
                    "version": package.version,
                    "files": [asdict(entry) for entry in staged.files],
                    "created_dirs": applied.created_dirs + (previous or {}).get("created_dirs", []),
                }, f, indent=2)
        except OSError as e:
            raise InstallError(f"Failed to install {package}: {e}", package.id, partial=applied) from e
        finally:
            # revert works from backup_dir only
            if staged.staging_dir is not None:
                shutil.rmtree(staged.staging_dir, ignore_errors=True)

        self.logger.log_debug(f"Applied {package}: {len(applied.files)} entries")
        return applied

    def _backup(self, dest: Path, path: str, backup_dir: Path):
        backup = backup_dir / "files" / path.lstrip("/")
        backup.parent.mkdir(parents=True, exist_ok=True)
        if dest.is_symlink():
            backup.with_name(backup.name + ".symlink").write_text(os.readlink(dest))
        elif dest.is_file():
            shutil.copy2(dest, backup)

    def _install_entry(self, staged: StagedContents, entry: FileEntry, applied: Applied):
        dest = self._dest(entry.path)
        src = staged.staging_dir / entry.path.lstrip("/")

        missing = []
        parent = dest.parent
        while not parent.exists():
            missing.append(parent)
            parent = parent.parent
        if missing:
            dest.parent.mkdir(parents=True)
            applied.created_dirs.extend(str(p) for p in reversed(missing))

        if entry.file_type == "dir":
            if not dest.exists():
                dest.mkdir()
                applied.created_dirs.append(str(dest))
            os.chmod(dest, entry.permissions)
            return

        if dest.exists() or dest.is_symlink():
            self._backup(dest, entry.path, applied.backup_dir)

        if entry.file_type == "symlink":
            if dest.exists() or dest.is_symlink():
                dest.unlink()
            os.symlink(os.readlink(src), dest)
        else:
            tmp = dest.with_name(dest.name + ".upm-tmp")
            try:
                shutil.copy2(src, tmp)
                os.chmod(tmp, entry.permissions)
                os.replace(tmp, dest)
            except OSError:
                tmp.unlink(missing_ok=True)
                raise
        applied.files.append(entry)

    # ==================== Revert / Remove ====================

    def revert(self, applied: Applied):
        backup_dir = applied.backup_dir
        files_backup = backup_dir / "files" if backup_dir else None
        try:
            for entry in reversed(applied.files):
                dest = self._dest(entry.path)
                if dest.exists() or dest.is_symlink():
                    dest.unlink()

            if files_backup is not None and files_backup.exists():
                for root, _, names in os.walk(files_backup):
                    for name in names:
                        backup = Path(root) / name
                        rel = backup.relative_to(files_backup)
                        if name.endswith(".symlink"):
                            dest = self.install_root / rel.parent / name[:-len(".symlink")]
                            dest.parent.mkdir(parents=True, exist_ok=True)
                            if dest.exists() or dest.is_symlink():
                                dest.unlink()
                            os.symlink(backup.read_text(), dest)
                        else:
                            dest = self.install_root / rel
                            dest.parent.mkdir(parents=True, exist_ok=True)
                            shutil.copy2(backup, dest)

            for directory in sorted(applied.created_dirs, key=len, reverse=True):
                path = Path(directory)
                if path.is_dir() and not any(path.iterdir()):
                    path.rmdir()

            manifest_path = self._manifest_path(applied.package.name)
            if backup_dir is not None and (backup_dir / "manifest.json").exists():
                shutil.copy2(backup_dir / "manifest.json", manifest_path)
            elif manifest_path.exists():
                manifest_path.unlink()
        except OSError as e:
            raise RevertError(f"Failed to revert {applied.package}: {e}", applied.package.id) from e

        if backup_dir is not None:
            shutil.rmtree(backup_dir, ignore_errors=True)
        self.logger.log_debug(f"Reverted {applied.package}")

    def discard(self, applied: Applied):
        if applied.backup_dir is not None:
            shutil.rmtree(applied.backup_dir, ignore_errors=True)

    def remove(self, package: Package):
        if not validate_tarball_name(package.name):
            raise RemoveError(f"Invalid package name: {package.name}", package.id)
        manifest = self.read_manifest(package.name)
        if manifest is None:
            self.logger.log_debug(f"{package.id} has no manifest; nothing to remove")
            return

        try:
            for entry in manifest["files"]:
                if entry["file_type"] != "dir":
                    dest = self._dest(entry["path"])
                    if dest.exists() or dest.is_symlink():
                        dest.unlink()
            # Only directories this package created; pre-existing ones stay
            dirs = {Path(d) for d in manifest.get("created_dirs", [])}
            for path in sorted(dirs, key=lambda p: len(str(p)), reverse=True):
                if path.is_dir() and path != self.install_root and not any(path.iterdir()):
                    path.rmdir()
            self._manifest_path(package.name).unlink()
        except OSError as e:
            raise RemoveError(f"Failed to remove {package.id}: {e}", package.id) from e
