import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from upm.errors import InvalidTransition


class Capability(str, Enum):
    """Capabilities a backend adapter may provide"""
    RESOLVE_METADATA = "resolve-metadata"
    UNPACK = "unpack"
    INSTALL_FILES = "install-files"
    REMOVE_FILES = "remove-files"
    BUILD = "build"


class OperationType(str, Enum):
    INSTALL = "install"
    UNINSTALL = "uninstall"
    UPDATE = "update"


class OperationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.ROLLED_BACK)


class PackageAction(str, Enum):
    INSTALL = "install"
    REMOVE = "remove"
    UPGRADE = "upgrade"
    REINSTALL = "reinstall"


# Monotonic lifecycle; failed -> rolled_back is the only move out of a terminal state
ALLOWED_TRANSITIONS = {
    OperationStatus.PENDING: {OperationStatus.RUNNING, OperationStatus.FAILED},
    OperationStatus.RUNNING: {OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.ROLLED_BACK},
    OperationStatus.FAILED: {OperationStatus.ROLLED_BACK},
    OperationStatus.COMPLETED: set(),
    OperationStatus.ROLLED_BACK: set(),
}


def make_package_id(backend_id: str, name: str) -> str:
    """Build the backend-qualified package id"""
    return f"{backend_id}:{name}"


def split_package_id(package_id: str) -> Tuple[str, str]:
    """Split a package id into (backend_id, name)

    Raises:
        ValueError: If the id carries no backend prefix
    """
    backend_id, sep, name = package_id.partition(":")
    if not sep or not backend_id or not name:
        raise ValueError(f"Invalid package id '{package_id}', expected 'backend:name'")
    return backend_id, name


def format_size(size_bytes: Optional[int]) -> str:
    """Format a byte count to human-readable form"""
    if not size_bytes:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(size_bytes)
    unit = 0
    while size >= 1024 and unit < len(units) - 1:
        size /= 1024
        unit += 1
    if unit == 0:
        return f"{size_bytes} B"
    return f"{size:.1f} {units[unit]}"


@dataclass
class Package:
    """Normalized package record produced by a backend adapter"""
    id: str
    name: str
    version: str
    description: str = ""
    repository: Optional[str] = None
    download_url: Optional[str] = None
    license: Optional[str] = None
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None  # sha256 of the artifact
    installed: bool = False
    installed_version: Optional[str] = None
    installed_time: Optional[datetime] = None

    @property
    def backend_id(self) -> str:
        return split_package_id(self.id)[0]

    @property
    def key(self) -> Tuple[str, str]:
        return self.id, self.version

    def __str__(self) -> str:
        return f"{self.id}@{self.version}"


@dataclass(frozen=True)
class DependencyEdge:
    """Directed edge: package_id requires dependency_id"""
    package_id: str
    dependency_id: str
    version_constraint: Optional[str] = None
    is_optional: bool = False


def merge_edges(edges: Iterable[DependencyEdge]) -> List[DependencyEdge]:
    """Conjoin duplicate requirements so that each pair has a single edge

    Constraints are joined with ',' (conjunction); an edge stays optional only
    if every merged requirement was optional.
    """
    merged: Dict[Tuple[str, str], DependencyEdge] = {}
    for edge in edges:
        pair = (edge.package_id, edge.dependency_id)
        existing = merged.get(pair)
        if existing is None:
            merged[pair] = edge
            continue
        clauses = [c for c in (existing.version_constraint, edge.version_constraint) if c]
        merged[pair] = DependencyEdge(
            package_id=edge.package_id,
            dependency_id=edge.dependency_id,
            version_constraint=", ".join(clauses) or None,
            is_optional=existing.is_optional and edge.is_optional,
        )
    return list(merged.values())


@dataclass(frozen=True)
class FileEntry:
    """One line of a normalized file manifest"""
    path: str
    permissions: int = 0o644
    owner: str = "root"
    file_type: str = "file"  # 'file', 'dir', 'symlink'
    digest: Optional[str] = None


@dataclass
class StagedContents:
    """Unpacked package ready to be applied"""
    package: Package
    files: List[FileEntry] = field(default_factory=list)
    staging_dir: Optional[Path] = None
    artifact: Optional[Path] = None


@dataclass
class Applied:
    """Result of apply(); enough detail for revert() to undo it"""
    package: Package
    files: List[FileEntry] = field(default_factory=list)
    backup_dir: Optional[Path] = None
    created_dirs: List[str] = field(default_factory=list)


@dataclass
class Repository:
    """Configured remote source for one backend"""
    backend_id: str
    url: str
    name: str = ""
    priority: int = 500  # lower wins
    enabled: bool = True
    last_synced: Optional[datetime] = None

    def __post_init__(self):
        if not self.name:
            self.name = self.url


@dataclass
class Operation:
    """Persisted record of one plan's execution"""
    id: str
    operation_type: OperationType
    packages: List[str]
    status: OperationStatus = OperationStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    snapshot_id: Optional[str] = None

    def transition(self, status: OperationStatus):
        """Move to a new status, enforcing the lifecycle

        Raises:
            InvalidTransition: If the move is not allowed
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Operation {self.id}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status


@dataclass
class Snapshot:
    """Pre-mutation marker of the installed set"""
    id: str
    commit_hash: str
    description: str = ""
    size_bytes: int = 0
    can_rollback: bool = True
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SnapshotEntry:
    package_id: str
    version: str
    manifest_digest: str = ""


@dataclass
class PlanStep:
    package: Package
    action: PackageAction
    previous: Optional[Package] = None  # installed record being replaced or removed

    def __str__(self) -> str:
        if self.action == PackageAction.UPGRADE and self.previous is not None:
            return f"upgrade {self.package.id} {self.previous.installed_version} -> {self.package.version}"
        return f"{self.action.value} {self.package}"


@dataclass
class Plan:
    """Ordered package actions produced by the resolver"""
    operation_type: OperationType
    steps: List[PlanStep] = field(default_factory=list)
    state_version: int = 0

    @property
    def package_ids(self) -> List[str]:
        return [step.package.id for step in self.steps]

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @property
    def total_download_size(self) -> int:
        return sum(step.package.size_bytes or 0 for step in self.steps
                   if step.action != PackageAction.REMOVE)

    def describe(self) -> str:
        """Human-readable plan summary"""
        if not self.steps:
            return "Nothing to do."
        lines = [f"  {step}" for step in self.steps]
        lines.append(f"Download size: {format_size(self.total_download_size)}")
        return "\n".join(lines)


@dataclass
class PackageRequest:
    name: str
    backend: Optional[str] = None
    constraint: Optional[str] = None

    @property
    def package_id(self) -> Optional[str]:
        return make_package_id(self.backend, self.name) if self.backend else None

    def __str__(self) -> str:
        text = f"{self.backend}:{self.name}" if self.backend else self.name
        return f"{text}{self.constraint}" if self.constraint else text


@dataclass
class ResolveRequest:
    operation_type: OperationType
    items: List[PackageRequest] = field(default_factory=list)
    force: bool = False
    reinstall: bool = False
    with_optional: bool = False
    remove_dependencies: bool = True


_REQUEST_RE = re.compile(
    r'^(?:(?P<backend>[a-z0-9_-]+):)?'
    r'(?P<name>[^\s<>=!@:]+)\s*'
    r'(?:@(?P<pinned>\S+)|(?P<constraint>[<>=!].*))?$'
)


def parse_package_request(text: str) -> PackageRequest:
    """Parse 'backend:name', 'name>=1.0', 'name@2.0' and similar forms

    Raises:
        ValueError: If the text is not a valid request
    """
    match = _REQUEST_RE.match(text.strip())
    if not match:
        raise ValueError(f"Invalid package request: '{text}'")
    constraint = match.group("constraint")
    if match.group("pinned"):
        constraint = f"={match.group('pinned')}"
    return PackageRequest(
        name=match.group("name"),
        backend=match.group("backend"),
        constraint=constraint.strip() if constraint else None,
    )
