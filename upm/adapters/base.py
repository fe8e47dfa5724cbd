from abc import ABC, abstractmethod
from pathlib import Path
from typing import FrozenSet, List, Optional

from upm.models import (Applied, Capability, DependencyEdge, Package, Repository,
                        StagedContents, make_package_id)
from upm.versions import VersionComparator, comparator_for


class BackendAdapter(ABC):
    """Abstract base class for packaging ecosystem adapters

    The core only talks to ecosystems through this contract. Adapters register
    under a unique backend_id that prefixes the ids of their packages.
    """

    backend_id: str = ""
    capabilities: FrozenSet[Capability] = frozenset({
        Capability.RESOLVE_METADATA,
        Capability.UNPACK,
        Capability.INSTALL_FILES,
        Capability.REMOVE_FILES,
    })

    @property
    def version_comparator(self) -> VersionComparator:
        """Ordering of this backend's versions"""
        return comparator_for(self.backend_id)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def package_id(self, name: str) -> str:
        return make_package_id(self.backend_id, name)

    @abstractmethod
    def fetch_metadata(self, repository: Optional[Repository], name: str) -> Package:
        """
        Fetch the newest known record of a package

        Args:
            repository: Source to query, or None for the backend's defaults
            name: Package name without backend prefix

        Returns:
            Normalized package record

        Raises:
            NotFound: If the package does not exist
        """
        pass

    @abstractmethod
    def list_dependencies(self, package: Package) -> List[DependencyEdge]:
        """
        List the dependency edges of one package version

        Args:
            package: Package record (id and version)

        Returns:
            Edges with backend-qualified dependency ids
        """
        pass

    @abstractmethod
    def stage(self, package: Package, artifact: Optional[Path]) -> StagedContents:
        """
        Unpack a downloaded artifact into a normalized file manifest

        Raises:
            UnpackError: If the artifact cannot be unpacked
        """
        pass

    @abstractmethod
    def apply(self, staged: StagedContents) -> Applied:
        """
        Write staged files to the system and assign permissions

        All-or-nothing from the core's point of view: partial writes are
        reported as InstallError carrying the partial Applied record.

        Raises:
            InstallError: If the files could not be written
        """
        pass

    @abstractmethod
    def revert(self, applied: Applied):
        """
        Undo a previous apply()

        Raises:
            RevertError: If the system could not be restored
        """
        pass

    @abstractmethod
    def remove(self, package: Package):
        """
        Remove an installed package; a no-op when it is already absent

        Raises:
            RemoveError: If removal failed
        """
        pass

    def discard(self, applied: Applied):
        """Release whatever apply() kept for revert(); called once the operation commits"""
        pass

    def list_packages(self, repository: Repository) -> List[Package]:
        """
        List every candidate a repository offers (used by refresh)

        Returns:
            Package records, possibly several versions per name
        """
        return []

    def search(self, query: str) -> List[Package]:
        """Search the backend directly"""
        return []

    def is_available(self) -> bool:
        """Check if this backend is usable on the system"""
        return True
