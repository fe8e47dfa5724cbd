"""
Package manager facade for Unified Package Manager
Wires configuration, database, adapters, resolver and transaction engine
together and exposes the install/remove/update/search/rollback API.
"""

from typing import Dict, List, Optional, Sequence

from upm.adapters.apt_adapter import AptAdapter
from upm.adapters.flatpak_adapter import FlatpakAdapter
from upm.adapters.registry import AdapterRegistry
from upm.adapters.snap_adapter import SnapAdapter
from upm.adapters.tarball_adapter import TarballAdapter
from upm.config import Config
from upm.database import Database
from upm.errors import ResolutionError
from upm.fetcher import Fetcher, HttpFetcher
from upm.logger import get_logger
from upm.models import (Operation, OperationType, Package, PackageRequest, Plan, Repository, ResolveRequest,
                        Snapshot, parse_package_request)
from upm.repositories import RepositoryRegistry
from upm.resolver import Resolver
from upm.transaction import TransactionEngine


def default_adapters(config: Config) -> AdapterRegistry:
    """Adapters for every supported ecosystem"""
    timeout = int(config.adapter_timeout)
    return AdapterRegistry([
        TarballAdapter(config.install_root, config.state_dir),
        AptAdapter(timeout=timeout),
        FlatpakAdapter(timeout=timeout),
        SnapAdapter(timeout=timeout),
    ])


def parse_requests(names: Sequence[str]) -> List[PackageRequest]:
    """Parse command-line style package requests

    Raises:
        ResolutionError: If a request cannot be parsed
    """
    requests = []
    for name in names:
        try:
            requests.append(parse_package_request(name))
        except ValueError as e:
            raise ResolutionError(str(e)) from e
    return requests


class PackageManager:
    """Entry point of the package manager core

    Operations that change the installed set return the finished Operation,
    or None when there was nothing to do.
    """

    def __init__(self, config: Optional[Config] = None, adapters: Optional[AdapterRegistry] = None,
                 fetcher: Optional[Fetcher] = None, logger=None):
        config = config or Config.from_env()
        self.logger = logger or get_logger(str(config.log_dir), config.log_level)
        self.db = Database(config.db_path)
        preferences = self.db.get_preferences()
        self.config = config.with_preferences(preferences)
        if 'log_level' in preferences:
            self.logger.set_level(self.config.log_level)

        self.adapters = adapters if adapters is not None else default_adapters(self.config)
        self.repositories = RepositoryRegistry(self.db, self.adapters, self.logger)
        self.resolver = Resolver(self.db, self.repositories, self.config.max_resolution_steps, self.logger)
        self.fetcher = fetcher or HttpFetcher(self.config.cache_dir)
        self.engine = TransactionEngine(self.db, self.adapters, self.fetcher, self.resolver,
                                        self.config, self.logger)
        self.engine.recover_interrupted()

    # ==================== Planning ====================

    def plan(self, operation_type: OperationType, names: Sequence[str] = (), force: bool = False,
             reinstall: bool = False, with_optional: bool = False, remove_dependencies: bool = True) -> Plan:
        """Resolve a request without executing it"""
        request = ResolveRequest(
            operation_type=operation_type,
            items=parse_requests(names),
            force=force,
            reinstall=reinstall,
            with_optional=with_optional,
            remove_dependencies=remove_dependencies,
        )
        return self.resolver.resolve(request)

    def execute(self, plan: Plan) -> Optional[Operation]:
        if plan.is_empty:
            self.logger.log_info("Nothing to do")
            return None
        return self.engine.execute(plan)

    # ==================== Operations ====================

    def install(self, names: Sequence[str], reinstall: bool = False,
                with_optional: bool = False) -> Optional[Operation]:
        """
        Install packages and their dependencies

        Args:
            names: Requests such as 'tar:hello', 'hello>=1.0' or 'hello@2.0'
            reinstall: Reinstall requested packages that are already installed
            with_optional: Also install optional dependencies

        Raises:
            ResolutionError: If no plan satisfies the request
            PartialFailure: If a failed operation could not be rolled back
        """
        plan = self.plan(OperationType.INSTALL, names, reinstall=reinstall, with_optional=with_optional)
        return self.execute(plan)

    def remove(self, names: Sequence[str], force: bool = False,
               remove_dependencies: bool = True) -> Optional[Operation]:
        """Remove packages

        Installed dependents are removed too unless force is set. Dependencies
        nothing else needs any more go with them unless remove_dependencies is False.
        """
        plan = self.plan(OperationType.UNINSTALL, names, force=force, remove_dependencies=remove_dependencies)
        return self.execute(plan)

    def update(self, names: Optional[Sequence[str]] = None) -> Optional[Operation]:
        """Upgrade the given installed packages, or all of them"""
        return self.execute(self.plan(OperationType.UPDATE, names or ()))

    def rollback(self, snapshot_id: str) -> Optional[Operation]:
        """Return the installed set to the state recorded in a snapshot"""
        return self.engine.rollback(snapshot_id)

    def cancel(self, operation_id: str) -> bool:
        return self.engine.cancel(operation_id)

    # ==================== Queries ====================

    def search(self, query: str, limit: int = 50) -> List[Package]:
        return self.repositories.search(query, limit)

    def list_installed(self) -> List[Package]:
        return self.db.installed_packages()

    def history(self, limit: int = 20) -> List[Operation]:
        return self.db.list_operations(limit)

    def snapshots(self, limit: int = 20) -> List[Snapshot]:
        return self.db.list_snapshots(limit)

    # ==================== Repositories ====================

    def refresh(self, backend_id: Optional[str] = None) -> Dict[str, int]:
        """Refresh one backend's repositories, or every available backend"""
        if backend_id is not None:
            return {backend_id: self.repositories.refresh(backend_id)}
        return self.repositories.refresh_all()

    def add_repository(self, backend_id: str, url: str, name: Optional[str] = None,
                       priority: int = 500, enabled: bool = True) -> Repository:
        repository = Repository(backend_id=backend_id, url=url, name=name or url,
                                priority=priority, enabled=enabled)
        return self.repositories.add(repository)

    def remove_repository(self, backend_id: str, url: str) -> bool:
        return self.repositories.remove(backend_id, url)

    def set_repository_enabled(self, backend_id: str, url: str, enabled: bool) -> bool:
        return self.repositories.set_enabled(backend_id, url, enabled)

    def list_repositories(self, backend_id: Optional[str] = None) -> List[Repository]:
        return self.repositories.list(backend_id)

    # ==================== Preferences ====================

    def set_preference(self, key: str, value):
        """Store a preference and apply it to the running configuration

        Raises:
            ConfigError: If the key is unknown or the value invalid
        """
        self.config = self.config.with_preferences({key: str(value)})
        self.db.set_preference(key, value)
        self.engine.config = self.config
        self.resolver.max_steps = self.config.max_resolution_steps
        if key == 'log_level':
            self.logger.set_level(self.config.log_level)

    def close(self):
        self.engine.close()
        self.db.close()
