from typing import Dict, Iterator, List

from upm.adapters.base import BackendAdapter
from upm.errors import NotFound
from upm.models import split_package_id
from upm.versions import VersionComparator, comparator_for


class AdapterRegistry:
    """Maps backend ids to adapter instances"""

    def __init__(self, adapters: List[BackendAdapter] = None):
        self._adapters: Dict[str, BackendAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: BackendAdapter):
        """Register an adapter under its backend_id

        Raises:
            ValueError: If the backend id is empty or already taken
        """
        if not adapter.backend_id:
            raise ValueError(f"{type(adapter).__name__} has no backend_id")
        if adapter.backend_id in self._adapters:
            raise ValueError(f"Backend '{adapter.backend_id}' is already registered")
        self._adapters[adapter.backend_id] = adapter

    def get(self, backend_id: str) -> BackendAdapter:
        adapter = self._adapters.get(backend_id)
        if adapter is None:
            raise NotFound(f"backend '{backend_id}'")
        return adapter

    def for_package(self, package_id: str) -> BackendAdapter:
        """Get the adapter owning a backend-qualified package id"""
        return self.get(split_package_id(package_id)[0])

    def comparator_for(self, backend_id: str) -> VersionComparator:
        adapter = self._adapters.get(backend_id)
        if adapter is not None:
            return adapter.version_comparator
        return comparator_for(backend_id)

    def available(self) -> List[BackendAdapter]:
        """Adapters whose backend is usable on this system"""
        return [adapter for adapter in self if adapter.is_available()]

    def __contains__(self, backend_id: str) -> bool:
        return backend_id in self._adapters

    def __iter__(self) -> Iterator[BackendAdapter]:
        return iter(self._adapters[key] for key in sorted(self._adapters))

    def __len__(self) -> int:
        return len(self._adapters)
