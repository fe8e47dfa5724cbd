"""
Package database for Unified Package Manager
SQLite store of known and installed packages, dependency edges, operation
history, snapshots, repositories and the installed-state lease
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from upm.config import ALLOWED_PREFERENCE_KEYS
from upm.errors import DatabaseError, LeaseHeldError
from upm.models import (DependencyEdge, FileEntry, Operation, OperationStatus, OperationType,
                        Package, Repository, Snapshot, SnapshotEntry, split_package_id)

LEASE_NAME = "installed-state"

_PACKAGE_COLUMNS = (
    "id, name, version, description, repository, download_url, license, "
    "size_bytes, checksum, installed, installed_version, installed_time"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class InstalledStateView:
    """Installed set read at one logical timestamp"""
    state_version: int
    packages: Dict[str, Package] = field(default_factory=dict)
    edges: Dict[str, List[DependencyEdge]] = field(default_factory=dict)

    def is_installed(self, package_id: str) -> bool:
        return package_id in self.packages

    def dependents(self, dependency_id: str) -> List[DependencyEdge]:
        """Edges from installed packages pointing at dependency_id"""
        return sorted(
            (edge for edges in self.edges.values() for edge in edges
             if edge.dependency_id == dependency_id),
            key=lambda edge: edge.package_id
        )


class Database:
    """SQLite database manager for the package manager core

    Thread Safety:
        Each thread gets its own connection through thread-local storage.
        Writes run inside BEGIN IMMEDIATE transactions.
    """

    def __init__(self, db_path):
        """Initialize database connection and create tables

        Args:
            db_path: Path to the SQLite database file

        Raises:
            DatabaseError: If database initialization fails due to SQLite or filesystem errors
        """
        self.db_path = str(db_path)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._lock = threading.Lock()
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._create_tables()
            self._create_indexes()
        except sqlite3.Error as e:
            self.close()
            raise DatabaseError(f"Failed to initialize database at {db_path}: {e}") from e
        except OSError as e:
            raise DatabaseError(f"Failed to create database directory for {db_path}: {e}") from e

    @property
    def conn(self) -> sqlite3.Connection:
        """Get connection for current thread"""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None,
                                   check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _write(self, action: str):
        """Run a block inside one write transaction"""
        conn = self.conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise DatabaseError(f"Failed to {action}: {e}") from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def _read(self, sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Query failed: {e}") from e

    def _create_tables(self):
        """Create database tables"""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS packages (
                id TEXT PRIMARY KEY,
                backend TEXT NOT NULL,
                name TEXT NOT NULL,
                version TEXT NOT NULL,
                description TEXT,
                repository TEXT,
                download_url TEXT,
                license TEXT,
                size_bytes INTEGER,
                checksum TEXT,
                installed BOOLEAN NOT NULL DEFAULT 0,
                installed_version TEXT,
                installed_time TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS package_versions (
                package_id TEXT NOT NULL REFERENCES packages(id) ON DELETE CASCADE,
                version TEXT NOT NULL,
                description TEXT,
                repository TEXT,
                download_url TEXT,
                license TEXT,
                size_bytes INTEGER,
                checksum TEXT,
                dependencies_known BOOLEAN NOT NULL DEFAULT 0,
                synced_at TIMESTAMP,
                PRIMARY KEY (package_id, version)
            );

            CREATE TABLE IF NOT EXISTS dependencies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                package_id TEXT NOT NULL REFERENCES packages(id) ON DELETE CASCADE,
                version TEXT NOT NULL,
                dependency_id TEXT NOT NULL REFERENCES packages(id),
                version_constraint TEXT,
                is_optional BOOLEAN NOT NULL DEFAULT 0,
                UNIQUE (package_id, version, dependency_id)
            );

            CREATE TABLE IF NOT EXISTS files (
                package_id TEXT NOT NULL REFERENCES packages(id) ON DELETE CASCADE,
                path TEXT NOT NULL,
                permissions INTEGER NOT NULL,
                owner TEXT,
                file_type TEXT NOT NULL,
                digest TEXT,
                PRIMARY KEY (package_id, path)
            );

            CREATE TABLE IF NOT EXISTS operations (
                id TEXT PRIMARY KEY,
                operation_type TEXT NOT NULL,
                packages TEXT NOT NULL,
                status TEXT NOT NULL,
                snapshot_id TEXT,
                started_at TIMESTAMP,
                completed_at TIMESTAMP,
                error_message TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS snapshots (
                id TEXT PRIMARY KEY,
                commit_hash TEXT NOT NULL,
                description TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                size_bytes INTEGER,
                can_rollback BOOLEAN NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS snapshot_entries (
                snapshot_id TEXT NOT NULL REFERENCES snapshots(id) ON DELETE CASCADE,
                package_id TEXT NOT NULL,
                version TEXT NOT NULL,
                manifest_digest TEXT,
                PRIMARY KEY (snapshot_id, package_id)
            );

            CREATE TABLE IF NOT EXISTS repositories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                backend_id TEXT NOT NULL,
                url TEXT NOT NULL,
                name TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 500,
                enabled BOOLEAN NOT NULL DEFAULT 1,
                last_synced TIMESTAMP,
                UNIQUE (backend_id, url)
            );

            CREATE TABLE IF NOT EXISTS lease (
                name TEXT PRIMARY KEY,
                holder TEXT NOT NULL,
                acquired_at TIMESTAMP NOT NULL,
                expires_at TIMESTAMP NOT NULL
            );

            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS preferences (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            INSERT OR IGNORE INTO meta (key, value) VALUES ('state_version', '0');
        """)

    def _create_indexes(self):
        """Create database indexes for performance"""
        self.conn.executescript("""
            CREATE INDEX IF NOT EXISTS idx_packages_name ON packages(name);
            CREATE INDEX IF NOT EXISTS idx_packages_backend ON packages(backend);
            CREATE INDEX IF NOT EXISTS idx_packages_installed ON packages(installed);
            CREATE INDEX IF NOT EXISTS idx_dependencies_target ON dependencies(dependency_id);
            CREATE INDEX IF NOT EXISTS idx_operations_status ON operations(status);
        """)

    # ==================== Packages ====================

    @staticmethod
    def _row_to_package(row: sqlite3.Row) -> Package:
        return Package(
            id=row["id"],
            name=row["name"],
            version=row["version"],
            description=row["description"] or "",
            repository=row["repository"],
            download_url=row["download_url"],
            license=row["license"],
            size_bytes=row["size_bytes"],
            checksum=row["checksum"],
            installed=bool(row["installed"]),
            installed_version=row["installed_version"],
            installed_time=_from_db(row["installed_time"]),
        )

    @staticmethod
    def _insert_package(conn: sqlite3.Connection, package: Package, update: bool):
        backend_id, _ = split_package_id(package.id)
        conflict = """
            DO UPDATE SET name = excluded.name, version = excluded.version,
                description = excluded.description, repository = excluded.repository,
                download_url = excluded.download_url, license = excluded.license,
                size_bytes = excluded.size_bytes, checksum = excluded.checksum,
                updated_at = CURRENT_TIMESTAMP
        """ if update else "DO NOTHING"
        conn.execute(f"""
            INSERT INTO packages
            (id, backend, name, version, description, repository, download_url, license, size_bytes, checksum)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) {conflict}
        """, (package.id, backend_id, package.name, package.version, package.description,
              package.repository, package.download_url, package.license, package.size_bytes,
              package.checksum))

    def upsert_package(self, package: Package):
        """Store package metadata; installed-state fields are never touched

        Raises:
            ValueError: If the package id is not backend-qualified
        """
        split_package_id(package.id)
        with self._write(f"store package '{package.id}'") as conn:
            self._insert_package(conn, package, update=True)

    def get_package(self, package_id: str) -> Optional[Package]:
        rows = self._read(f"SELECT {_PACKAGE_COLUMNS} FROM packages WHERE id = ?", (package_id,))
        return self._row_to_package(rows[0]) if rows else None

    def find_packages(self, name: str) -> List[Package]:
        """Packages with this exact name across all backends"""
        rows = self._read(
            f"SELECT {_PACKAGE_COLUMNS} FROM packages WHERE name = ? ORDER BY installed DESC, id",
            (name,)
        )
        return [self._row_to_package(row) for row in rows]

    def search_packages(self, query: str, limit: int = 50) -> List[Package]:
        """Case-insensitive substring search over names and descriptions"""
        pattern = "%" + query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        rows = self._read(f"""
            SELECT {_PACKAGE_COLUMNS} FROM packages
            WHERE name LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\'
            ORDER BY name, id LIMIT ?
        """, (pattern, pattern, limit))
        return [self._row_to_package(row) for row in rows]

    def installed_packages(self) -> List[Package]:
        rows = self._read(f"SELECT {_PACKAGE_COLUMNS} FROM packages WHERE installed = 1 ORDER BY id")
        return [self._row_to_package(row) for row in rows]

    def set_installed_state(self, package: Package, version: Optional[str],
                            installed_time: Optional[datetime] = None,
                            files: Optional[List[FileEntry]] = None):
        """Record a package as installed at version, or as absent when version is None

        Also stores the file manifest and bumps the state version.
        """
        with self._write(f"update installed state of '{package.id}'") as conn:
            self._insert_package(conn, package, update=False)
            if version is not None:
                self._insert_candidate(conn, package, update=False)
            conn.execute("""
                UPDATE packages
                SET installed = ?, installed_version = ?, installed_time = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (version is not None, version, _to_db(installed_time) if version else None, package.id))
            conn.execute("DELETE FROM files WHERE package_id = ?", (package.id,))
            if version is not None:
                conn.executemany("""
                    INSERT INTO files (package_id, path, permissions, owner, file_type, digest)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, [(package.id, f.path, f.permissions, f.owner, f.file_type, f.digest)
                      for f in files or []])
            conn.execute("""
                UPDATE meta SET value = CAST(value AS INTEGER) + 1 WHERE key = 'state_version'
            """)

    def touch_installed_time(self, package_ids: List[str], when: datetime):
        with self._write("stamp installed time") as conn:
            conn.executemany(
                "UPDATE packages SET installed_time = ? WHERE id = ? AND installed = 1",
                [(_to_db(when), package_id) for package_id in package_ids]
            )

    def get_files(self, package_id: str) -> List[FileEntry]:
        rows = self._read(
            "SELECT path, permissions, owner, file_type, digest FROM files WHERE package_id = ? ORDER BY path",
            (package_id,)
        )
        return [FileEntry(row["path"], row["permissions"], row["owner"], row["file_type"], row["digest"])
                for row in rows]

    # ==================== Candidates ====================

    @staticmethod
    def _insert_candidate(conn: sqlite3.Connection, package: Package, update: bool):
        conflict = """
            DO UPDATE SET description = excluded.description, repository = excluded.repository,
                download_url = excluded.download_url, license = excluded.license,
                size_bytes = excluded.size_bytes, checksum = excluded.checksum,
                synced_at = excluded.synced_at
        """ if update else "DO NOTHING"
        conn.execute(f"""
            INSERT INTO package_versions
            (package_id, version, description, repository, download_url, license, size_bytes, checksum, synced_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(package_id, version) {conflict}
        """, (package.id, package.version, package.description, package.repository,
              package.download_url, package.license, package.size_bytes, package.checksum,
              _to_db(utcnow())))

    def upsert_candidate(self, package: Package):
        """Store one available version of a package"""
        split_package_id(package.id)
        with self._write(f"store candidate '{package}'") as conn:
            self._insert_package(conn, package, update=False)
            self._insert_candidate(conn, package, update=True)

    def _candidate_rows(self, where: str, params: Iterable) -> List[Package]:
        rows = self._read(f"""
            SELECT p.id, p.name, v.version, v.description, v.repository, v.download_url,
                   v.license, v.size_bytes, v.checksum, p.installed, p.installed_version,
                   p.installed_time
            FROM package_versions v JOIN packages p ON p.id = v.package_id
            WHERE {where}
        """, params)
        return [self._row_to_package(row) for row in rows]

    def get_candidates(self, package_id: str) -> List[Package]:
        """All known versions of a package, unordered"""
        return self._candidate_rows("v.package_id = ?", (package_id,))

    def get_candidate(self, package_id: str, version: str) -> Optional[Package]:
        rows = self._candidate_rows("v.package_id = ? AND v.version = ?", (package_id, version))
        return rows[0] if rows else None

    # ==================== Dependencies ====================

    def set_dependencies(self, package_id: str, version: str, edges: List[DependencyEdge]):
        """Replace the dependency edges of one package version

        Raises:
            ValueError: If two edges target the same dependency
            DatabaseError: If an edge references an unknown package
        """
        targets = [edge.dependency_id for edge in edges]
        if len(targets) != len(set(targets)):
            raise ValueError(f"Duplicate dependency edges for {package_id}@{version}; merge them first")
        with self._write(f"store dependencies of '{package_id}'") as conn:
            conn.execute("DELETE FROM dependencies WHERE package_id = ? AND version = ?",
                         (package_id, version))
            conn.executemany("""
                INSERT INTO dependencies (package_id, version, dependency_id, version_constraint, is_optional)
                VALUES (?, ?, ?, ?, ?)
            """, [(package_id, version, e.dependency_id, e.version_constraint, e.is_optional) for e in edges])
            conn.execute("""
                UPDATE package_versions SET dependencies_known = 1 WHERE package_id = ? AND version = ?
            """, (package_id, version))

    def get_dependencies(self, package_id: str, version: str) -> Optional[List[DependencyEdge]]:
        """Edges of one package version, or None if they were never recorded"""
        known = self._read(
            "SELECT dependencies_known FROM package_versions WHERE package_id = ? AND version = ?",
            (package_id, version)
        )
        if not known or not known[0]["dependencies_known"]:
            return None
        rows = self._read("""
            SELECT package_id, dependency_id, version_constraint, is_optional FROM dependencies
            WHERE package_id = ? AND version = ? ORDER BY dependency_id
        """, (package_id, version))
        return [DependencyEdge(row["package_id"], row["dependency_id"], row["version_constraint"],
                               bool(row["is_optional"])) for row in rows]

    # ==================== Installed State View ====================

    def state_version(self) -> int:
        rows = self._read("SELECT value FROM meta WHERE key = 'state_version'")
        return int(rows[0]["value"])

    def read_view(self) -> InstalledStateView:
        """Read the installed set and its edges inside a single read transaction"""
        conn = self.conn
        try:
            conn.execute("BEGIN")
            version = int(conn.execute("SELECT value FROM meta WHERE key = 'state_version'").fetchone()[0])
            packages = {
                row["id"]: self._row_to_package(row)
                for row in conn.execute(f"SELECT {_PACKAGE_COLUMNS} FROM packages WHERE installed = 1")
            }
            edges: Dict[str, List[DependencyEdge]] = {}
            for row in conn.execute("""
                SELECT d.package_id, d.dependency_id, d.version_constraint, d.is_optional
                FROM dependencies d
                JOIN packages p ON p.id = d.package_id AND p.installed = 1 AND d.version = p.installed_version
                ORDER BY d.package_id, d.dependency_id
            """):
                edges.setdefault(row["package_id"], []).append(DependencyEdge(
                    row["package_id"], row["dependency_id"], row["version_constraint"], bool(row["is_optional"])
                ))
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise DatabaseError(f"Failed to read installed state: {e}") from e
        return InstalledStateView(version, packages, edges)

    # ==================== Operations ====================

    def save_operation(self, operation: Operation):
        """Insert or update an operation row"""
        with self._write(f"save operation {operation.id}") as conn:
            conn.execute("""
                INSERT INTO operations
                (id, operation_type, packages, status, snapshot_id, started_at, completed_at, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET status = excluded.status,
                    snapshot_id = excluded.snapshot_id, started_at = excluded.started_at,
                    completed_at = excluded.completed_at, error_message = excluded.error_message
            """, (operation.id, operation.operation_type.value, json.dumps(operation.packages),
                  operation.status.value, operation.snapshot_id, _to_db(operation.started_at),
                  _to_db(operation.completed_at), operation.error_message))

    @staticmethod
    def _row_to_operation(row: sqlite3.Row) -> Operation:
        return Operation(
            id=row["id"],
            operation_type=OperationType(row["operation_type"]),
            packages=json.loads(row["packages"]),
            status=OperationStatus(row["status"]),
            started_at=_from_db(row["started_at"]),
            completed_at=_from_db(row["completed_at"]),
            error_message=row["error_message"],
            snapshot_id=row["snapshot_id"],
        )

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        rows = self._read("SELECT * FROM operations WHERE id = ?", (operation_id,))
        return self._row_to_operation(rows[0]) if rows else None

    def list_operations(self, limit: int = 20, status: Optional[OperationStatus] = None) -> List[Operation]:
        """Most recent operations first"""
        if status is not None:
            rows = self._read(
                "SELECT * FROM operations WHERE status = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (status.value, limit)
            )
        else:
            rows = self._read("SELECT * FROM operations ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,))
        return [self._row_to_operation(row) for row in rows]

    # ==================== Snapshots ====================

    def create_snapshot(self, snapshot: Snapshot, entries: List[SnapshotEntry]):
        with self._write(f"create snapshot {snapshot.id}") as conn:
            conn.execute("""
                INSERT INTO snapshots (id, commit_hash, description, created_at, size_bytes, can_rollback)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (snapshot.id, snapshot.commit_hash, snapshot.description,
                  _to_db(snapshot.created_at or utcnow()), snapshot.size_bytes, snapshot.can_rollback))
            conn.executemany("""
                INSERT INTO snapshot_entries (snapshot_id, package_id, version, manifest_digest)
                VALUES (?, ?, ?, ?)
            """, [(snapshot.id, e.package_id, e.version, e.manifest_digest) for e in entries])

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> Snapshot:
        return Snapshot(
            id=row["id"],
            commit_hash=row["commit_hash"],
            description=row["description"] or "",
            size_bytes=row["size_bytes"] or 0,
            can_rollback=bool(row["can_rollback"]),
            created_at=_from_db(row["created_at"]),
        )

    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        rows = self._read("SELECT * FROM snapshots WHERE id = ?", (snapshot_id,))
        return self._row_to_snapshot(rows[0]) if rows else None

    def list_snapshots(self, limit: int = 20) -> List[Snapshot]:
        rows = self._read("SELECT * FROM snapshots ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,))
        return [self._row_to_snapshot(row) for row in rows]

    def get_snapshot_entries(self, snapshot_id: str) -> List[SnapshotEntry]:
        rows = self._read("""
            SELECT package_id, version, manifest_digest FROM snapshot_entries
            WHERE snapshot_id = ? ORDER BY package_id
        """, (snapshot_id,))
        return [SnapshotEntry(row["package_id"], row["version"], row["manifest_digest"] or "") for row in rows]

    def disable_snapshot_rollback(self, snapshot_id: str):
        """Mark a snapshot as no longer restorable"""
        with self._write(f"update snapshot {snapshot_id}") as conn:
            conn.execute("UPDATE snapshots SET can_rollback = 0 WHERE id = ?", (snapshot_id,))

    # ==================== Repositories ====================

    def add_repository(self, repository: Repository):
        """Add a repository, or update its name, priority and enabled flag"""
        with self._write(f"add repository {repository.url}") as conn:
            conn.execute("""
                INSERT INTO repositories (backend_id, url, name, priority, enabled)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(backend_id, url) DO UPDATE SET name = excluded.name,
                    priority = excluded.priority, enabled = excluded.enabled
            """, (repository.backend_id, repository.url, repository.name, repository.priority,
                  repository.enabled))

    def remove_repository(self, backend_id: str, url: str) -> bool:
        with self._write(f"remove repository {url}") as conn:
            cursor = conn.execute("DELETE FROM repositories WHERE backend_id = ? AND url = ?", (backend_id, url))
            return cursor.rowcount > 0

    def list_repositories(self, backend_id: Optional[str] = None) -> List[Repository]:
        """Repositories ordered by priority (lowest number first)"""
        if backend_id is not None:
            rows = self._read(
                "SELECT * FROM repositories WHERE backend_id = ? ORDER BY priority, name", (backend_id,)
            )
        else:
            rows = self._read("SELECT * FROM repositories ORDER BY priority, backend_id, name")
        return [Repository(backend_id=row["backend_id"], url=row["url"], name=row["name"],
                           priority=row["priority"], enabled=bool(row["enabled"]),
                           last_synced=_from_db(row["last_synced"])) for row in rows]

    def mark_repository_synced(self, backend_id: str, url: str, when: datetime):
        with self._write(f"update repository {url}") as conn:
            conn.execute("UPDATE repositories SET last_synced = ? WHERE backend_id = ? AND url = ?",
                         (_to_db(when), backend_id, url))

    # ==================== Lease ====================

    def acquire_lease(self, holder: str, ttl: int) -> Optional[str]:
        """Take the exclusive installed-state lease

        Args:
            holder: Id of the acquiring operation
            ttl: Seconds before the lease may be taken over

        Returns:
            Id of an expired holder that was displaced, or None

        Raises:
            LeaseHeldError: If another holder has a live lease
        """
        now = utcnow()
        with self._write("acquire lease") as conn:
            row = conn.execute("SELECT holder, expires_at FROM lease WHERE name = ?", (LEASE_NAME,)).fetchone()
            displaced = None
            if row is not None and row["holder"] != holder:
                if _from_db(row["expires_at"]) > now:
                    raise LeaseHeldError(row["holder"])
                displaced = row["holder"]
            conn.execute("""
                INSERT OR REPLACE INTO lease (name, holder, acquired_at, expires_at) VALUES (?, ?, ?, ?)
            """, (LEASE_NAME, holder, _to_db(now), _to_db(now + timedelta(seconds=ttl))))
        return displaced

    def renew_lease(self, holder: str, ttl: int):
        """Push the expiry of a lease this holder still owns ttl seconds ahead

        Raises:
            LeaseHeldError: If the lease was dropped or taken over
        """
        now = utcnow()
        with self._write("renew lease") as conn:
            row = conn.execute("SELECT holder FROM lease WHERE name = ?", (LEASE_NAME,)).fetchone()
            if row is None or row["holder"] != holder:
                current = row["holder"] if row is not None else None
                raise LeaseHeldError(current, f"Operation {holder} no longer holds the installed-state lease"
                                              f" (now held by {current or 'nobody'})")
            conn.execute("UPDATE lease SET expires_at = ? WHERE name = ?",
                         (_to_db(now + timedelta(seconds=ttl)), LEASE_NAME))

    def release_lease(self, holder: str):
        with self._write("release lease") as conn:
            conn.execute("DELETE FROM lease WHERE name = ? AND holder = ?", (LEASE_NAME, holder))

    def drop_expired_lease(self) -> Optional[str]:
        """Delete the lease if it has expired; returns the dropped holder"""
        with self._write("drop expired lease") as conn:
            row = conn.execute("SELECT holder, expires_at FROM lease WHERE name = ?", (LEASE_NAME,)).fetchone()
            if row is None or _from_db(row["expires_at"]) > utcnow():
                return None
            conn.execute("DELETE FROM lease WHERE name = ?", (LEASE_NAME,))
            return row["holder"]

    def get_lease_holder(self) -> Optional[str]:
        rows = self._read("SELECT holder, expires_at FROM lease WHERE name = ?", (LEASE_NAME,))
        if not rows or _from_db(rows[0]["expires_at"]) <= utcnow():
            return None
        return rows[0]["holder"]

    # ==================== Preferences ====================

    def get_preferences(self) -> Dict[str, str]:
        return {row["key"]: row["value"] for row in self._read("SELECT key, value FROM preferences")}

    def set_preference(self, key: str, value):
        """Store a preference

        Raises:
            ValueError: If the key is not in ALLOWED_PREFERENCE_KEYS
        """
        if key not in ALLOWED_PREFERENCE_KEYS:
            raise ValueError(f"Invalid preference key: {key}. Allowed keys: {sorted(ALLOWED_PREFERENCE_KEYS)}")
        with self._write(f"set preference {key}") as conn:
            conn.execute("INSERT OR REPLACE INTO preferences (key, value) VALUES (?, ?)", (key, str(value)))

    def close(self):
        """Close every connection opened by this manager"""
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections = []
        self._local = threading.local()
