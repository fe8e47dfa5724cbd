"""
Shared fixtures: an in-memory backend with failure injection and a fully
wired core over a temporary database
"""

from typing import Dict, List, Optional, Set, Tuple

import pytest

from upm.adapters.base import BackendAdapter
from upm.adapters.registry import AdapterRegistry
from upm.config import Config
from upm.database import Database
from upm.errors import InstallError, NotFound, RemoveError, RevertError, UnpackError
from upm.fetcher import HttpFetcher
from upm.logger import LoggerManager, set_logger
from upm.models import (Applied, DependencyEdge, FileEntry, OperationType, Package, Repository,
                        ResolveRequest, StagedContents, parse_package_request)
from upm.repositories import RepositoryRegistry
from upm.resolver import Resolver
from upm.transaction import TransactionEngine


class FakeAdapter(BackendAdapter):
    """In-memory backend; `installed` maps package name to installed version"""

    _errors = {
        'stage': UnpackError,
        'apply': InstallError,
        'remove': RemoveError,
        'revert': RevertError,
    }

    def __init__(self, backend_id: str = "fake"):
        self.backend_id = backend_id
        self.catalog: Dict[str, Dict[str, Package]] = {}
        self.deps: Dict[Tuple[str, str], List[DependencyEdge]] = {}
        self.installed: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self.partial_apply: Set[str] = set()
        self._failures: Dict[Tuple[str, str], Optional[int]] = {}
        self._previous: Dict[Tuple[str, str], Optional[str]] = {}

    def add(self, name: str, version: str, requires=(), optional=(), size_bytes: int = 1000) -> Package:
        """Publish a package version; requirements look like 'dep', 'dep>=1.0' or 'other:dep'"""
        package = Package(id=self.package_id(name), name=name, version=version,
                          description=f"{name} test package", repository="main", size_bytes=size_bytes)
        self.catalog.setdefault(name, {})[version] = package
        self.deps[package.key] = ([self._edge(package, spec, False) for spec in requires]
                                  + [self._edge(package, spec, True) for spec in optional])
        return package

    def _edge(self, package: Package, spec: str, optional: bool) -> DependencyEdge:
        request = parse_package_request(spec)
        backend = request.backend or self.backend_id
        return DependencyEdge(package.id, f"{backend}:{request.name}", request.constraint, optional)

    def fail(self, method: str, name: str, times: Optional[int] = None):
        """Make `method` fail for package `name`; times=None fails forever"""
        self._failures[(method, name)] = times

    def heal(self, method: str, name: str):
        self._failures.pop((method, name), None)

    def _check(self, method: str, package: Package):
        self.calls.append((method, str(package)))
        key = (method, package.name)
        if key not in self._failures:
            return
        remaining = self._failures[key]
        if remaining is not None:
            if remaining <= 0:
                return
            self._failures[key] = remaining - 1
        raise self._errors[method](f"injected {method} failure for {package}", package.id)

    def fetch_metadata(self, repository, name):
        versions = self.catalog.get(name)
        if not versions:
            raise NotFound(self.package_id(name))
        return versions[self.version_comparator.sorted(list(versions), reverse=True)[0]]

    def list_packages(self, repository):
        return [package for versions in self.catalog.values() for package in versions.values()]

    def list_dependencies(self, package):
        return list(self.deps.get(package.key, []))

    def search(self, query):
        return [self.fetch_metadata(None, name) for name in sorted(self.catalog) if query in name]

    def stage(self, package, artifact):
        self._check('stage', package)
        files = [FileEntry(f"/opt/{self.backend_id}/{package.name}/bin", 0o755, digest=package.version)]
        return StagedContents(package=package, files=files, artifact=artifact)

    def apply(self, staged):
        package = staged.package
        self._check('apply', package)
        self._previous[package.key] = self.installed.get(package.name)
        self.installed[package.name] = package.version
        applied = Applied(package=package, files=list(staged.files))
        if package.name in self.partial_apply:
            raise InstallError(f"apply of {package} stopped halfway", package.id, partial=applied)
        return applied

    def revert(self, applied):
        package = applied.package
        self._check('revert', package)
        previous = self._previous.pop(package.key, None)
        if previous is None:
            self.installed.pop(package.name, None)
        else:
            self.installed[package.name] = previous

    def remove(self, package):
        self._check('remove', package)
        self.installed.pop(package.name, None)


class Core:
    """Database, registries, resolver and engine over a temporary directory"""

    def __init__(self, tmp_path, logger, adapters: List[BackendAdapter], **config):
        config.setdefault('max_retries', 1)
        config.setdefault('adapter_timeout', 10.0)
        self.config = Config(data_dir=tmp_path / "data", **config)
        self.db = Database(self.config.db_path)
        self.adapters = AdapterRegistry(adapters)
        self.repositories = RepositoryRegistry(self.db, self.adapters, logger)
        self.resolver = Resolver(self.db, self.repositories, self.config.max_resolution_steps, logger)
        self.engine = TransactionEngine(self.db, self.adapters, HttpFetcher(self.config.cache_dir),
                                        self.resolver, self.config, logger)

    def sync(self):
        """Register one repository per backend and refresh it"""
        for adapter in self.adapters:
            self.repositories.add(Repository(adapter.backend_id, f"memory://{adapter.backend_id}", "main"))
        for adapter in self.adapters:
            self.repositories.refresh(adapter.backend_id)

    def resolve(self, operation_type: OperationType, *names: str, **options):
        items = [parse_package_request(name) for name in names]
        return self.resolver.resolve(ResolveRequest(operation_type, items, **options))

    def install(self, *names: str, **options):
        return self.engine.execute(self.resolve(OperationType.INSTALL, *names, **options))

    def remove(self, *names: str, **options):
        return self.engine.execute(self.resolve(OperationType.UNINSTALL, *names, **options))

    def update(self, *names: str):
        return self.engine.execute(self.resolve(OperationType.UPDATE, *names))

    def installed(self) -> Dict[str, str]:
        return {p.id: p.installed_version for p in self.db.installed_packages()}

    def close(self):
        self.engine.close()
        self.db.close()


@pytest.fixture(autouse=True)
def logger(tmp_path):
    """Route all logging of a test into its temporary directory"""
    manager = LoggerManager(log_dir=str(tmp_path / "logs"), level="WARNING")
    set_logger(manager)
    yield manager
    manager.close()
    set_logger(None)


@pytest.fixture
def db(tmp_path):
    """Create a Database instance on a temporary file"""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def fake():
    return FakeAdapter("fake")


@pytest.fixture
def other():
    """A second backend for cross-ecosystem tests"""
    return FakeAdapter("other")


@pytest.fixture
def make_core(tmp_path, logger):
    """Factory for a Core over any set of adapters"""
    created = []

    def factory(adapters, **config):
        instance = Core(tmp_path, logger, adapters, **config)
        created.append(instance)
        return instance

    yield factory
    for instance in created:
        instance.close()


@pytest.fixture
def core(make_core, fake):
    """Core wired to a single fake backend"""
    return make_core([fake])
