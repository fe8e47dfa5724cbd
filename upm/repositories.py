"""
Repository registry for Unified Package Manager
Keeps configured repositories and the candidate/dependency metadata they
provide in the package database. Installed-state fields are never touched here.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from upm.adapters.registry import AdapterRegistry
from upm.database import Database
from upm.errors import AdapterError, NotFound
from upm.logger import get_logger
from upm.models import DependencyEdge, Package, Repository, merge_edges, split_package_id

UNRANKED_PRIORITY = 1000


class RepositoryRegistry:
    """Manages repositories and the package metadata fetched from them"""

    def __init__(self, db: Database, adapters: AdapterRegistry, logger=None):
        self.db = db
        self.adapters = adapters
        self.logger = logger or get_logger()

    # ==================== Repository Management ====================

    def add(self, repository: Repository) -> Repository:
        """Add or update a repository

        Raises:
            NotFound: If no adapter is registered for its backend
        """
        self.adapters.get(repository.backend_id)
        self.db.add_repository(repository)
        self.logger.log_info(f"Added {repository.backend_id} repository {repository.name} "
                             f"(priority {repository.priority})")
        return repository

    def remove(self, backend_id: str, url: str) -> bool:
        removed = self.db.remove_repository(backend_id, url)
        if removed:
            self.logger.log_info(f"Removed {backend_id} repository {url}")
        return removed

    def set_enabled(self, backend_id: str, url: str, enabled: bool) -> bool:
        """Enable or disable a repository; False if it is not configured"""
        for repository in self.db.list_repositories(backend_id):
            if repository.url == url:
                repository.enabled = enabled
                self.db.add_repository(repository)
                self.logger.log_repository_status(repository.name, enabled)
                return True
        return False

    def list(self, backend_id: Optional[str] = None) -> List[Repository]:
        return self.db.list_repositories(backend_id)

    def is_stale(self, repository: Repository, max_age: timedelta) -> bool:
        if repository.last_synced is None:
            return True
        return datetime.now(timezone.utc) - repository.last_synced > max_age

    # ==================== Refresh ====================

    def refresh(self, backend_id: str) -> int:
        """Re-fetch candidates of every enabled repository of a backend

        Returns:
            Number of candidate records stored
        """
        adapter = self.adapters.get(backend_id)
        comparator = adapter.version_comparator
        fetched: List[Package] = []
        synced: List[Repository] = []

        for repository in self.db.list_repositories(backend_id):
            if not repository.enabled:
                continue
            packages = adapter.list_packages(repository)
            for package in packages:
                self.db.upsert_candidate(package)
            fetched.extend(packages)
            synced.append(repository)
            self.logger.log_refresh(backend_id, repository.name, len(packages))

        newest: Dict[str, Package] = {}
        for package in fetched:
            best = newest.get(package.id)
            if best is None or comparator.compare(package.version, best.version) > 0:
                newest[package.id] = package
        for package in newest.values():
            self.db.upsert_package(package)

        # Edges last, once every target listed by this refresh is stored
        for package in fetched:
            self._store_edges(package, adapter.list_dependencies(package))

        now = datetime.now(timezone.utc)
        for repository in synced:
            self.db.mark_repository_synced(repository.backend_id, repository.url, now)
        return len(fetched)

    def refresh_all(self) -> Dict[str, int]:
        """Refresh every available backend; a failing backend is logged and skipped"""
        counts = {}
        for adapter in self.adapters.available():
            try:
                counts[adapter.backend_id] = self.refresh(adapter.backend_id)
            except AdapterError as e:
                self.logger.log_error(f"Refresh of {adapter.backend_id} failed", e)
        return counts

    # ==================== Metadata Access ====================

    def _store(self, package: Package):
        self.db.upsert_candidate(package)
        current = self.db.get_package(package.id)
        comparator = self.adapters.comparator_for(package.backend_id)
        if current is None or comparator.compare(package.version, current.version) > 0:
            self.db.upsert_package(package)

    def _fetch(self, backend_id: str, name: str) -> Optional[Package]:
        """Ask one backend for a package it has not reported yet"""
        if backend_id not in self.adapters:
            return None
        adapter = self.adapters.get(backend_id)
        if not adapter.is_available():
            return None
        repositories = [r for r in self.db.list_repositories(backend_id) if r.enabled] or [None]
        for repository in repositories:
            try:
                package = adapter.fetch_metadata(repository, name)
            except NotFound:
                continue
            except AdapterError as e:
                self.logger.log_warning(f"Lookup of {name} in {backend_id} failed: {e}")
                continue
            self._store(package)
            return package
        return None

    def _store_edges(self, package: Package, edges: List[DependencyEdge]):
        kept = []
        for edge in merge_edges(edges):
            if self.db.get_package(edge.dependency_id) is None:
                backend_id, name = split_package_id(edge.dependency_id)
                if self._fetch(backend_id, name) is None:
                    self.logger.log_warning(
                        f"{package} depends on unknown package {edge.dependency_id}; edge skipped"
                    )
                    continue
            kept.append(edge)
        self.db.set_dependencies(package.id, package.version, kept)
        return kept

    def priority_of(self, package: Package) -> int:
        """Priority of the repository a package came from (lower wins)"""
        repositories = self.db.list_repositories(package.backend_id)
        for repository in repositories:
            if package.repository in (repository.name, repository.url):
                return repository.priority
        return min((r.priority for r in repositories), default=UNRANKED_PRIORITY)

    def find(self, name: str, backend_id: Optional[str] = None) -> List[Package]:
        """Packages named `name`, ordered by repository priority then backend id"""
        matches = [p for p in self.db.find_packages(name)
                   if backend_id is None or p.backend_id == backend_id]
        if not matches:
            backends = [backend_id] if backend_id else [a.backend_id for a in self.adapters]
            for candidate_backend in backends:
                package = self._fetch(candidate_backend, name)
                if package is not None:
                    matches.append(package)
        return sorted(matches, key=lambda p: (self.priority_of(p), p.backend_id))

    def candidates(self, package_id: str) -> List[Package]:
        """All known versions of a package, unordered"""
        candidates = self.db.get_candidates(package_id)
        if not candidates:
            backend_id, name = split_package_id(package_id)
            if self._fetch(backend_id, name) is not None:
                candidates = self.db.get_candidates(package_id)
        return candidates

    def dependencies(self, package: Package) -> List[DependencyEdge]:
        """Dependency edges of one candidate version, fetched once and cached"""
        edges = self.db.get_dependencies(package.id, package.version)
        if edges is not None:
            return edges
        if self.db.get_candidate(package.id, package.version) is None:
            self.db.upsert_candidate(package)
        adapter = self.adapters.for_package(package.id)
        return self._store_edges(package, adapter.list_dependencies(package))

    def search(self, query: str, limit: int = 50) -> List[Package]:
        """Search stored metadata and every available backend"""
        results = {p.id: p for p in self.db.search_packages(query, limit)}
        for adapter in self.adapters.available():
            try:
                found = adapter.search(query)
            except AdapterError as e:
                self.logger.log_warning(f"Search in {adapter.backend_id} failed: {e}")
                continue
            for package in found:
                if package.id not in results:
                    self._store(package)
                    results[package.id] = self.db.get_package(package.id) or package
        return sorted(results.values(), key=lambda p: (p.name, p.id))[:limit]
