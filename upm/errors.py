"""
Error taxonomy for the Unified Package Manager core

Resolution-phase errors are raised before any Operation row exists.
Adapter-phase errors are retried by the transaction engine and then trigger
a rollback.
"""

from typing import Dict, List, Optional, Sequence


class UPMError(Exception):
    """Base class for all UPM errors"""
    pass


# ==================== Resolution Errors ====================

class ResolutionError(UPMError):
    """The requested packages cannot be resolved into a plan"""

    def __init__(self, message: str, constraints: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.constraints = list(constraints or [])


class NotFound(ResolutionError):
    """Unknown package, backend or repository"""

    def __init__(self, what: str):
        super().__init__(f"Not found: {what}")
        self.what = what


class Conflict(ResolutionError):
    """Two constraints on the same package have an empty intersection"""

    def __init__(self, package: str, constraint_a: str, constraint_b: str):
        super().__init__(
            f"Conflicting constraints on {package}: '{constraint_a}' and '{constraint_b}'",
            [constraint_a, constraint_b]
        )
        self.package = package
        self.constraint_a = constraint_a
        self.constraint_b = constraint_b


class CyclicDependency(ResolutionError):
    """A new install would introduce a dependency cycle"""

    def __init__(self, path: Sequence[str]):
        super().__init__(f"Dependency cycle: {' -> '.join(path)}")
        self.path = list(path)


# ==================== Adapter Errors ====================

class AdapterError(UPMError):
    """Error reported by a backend adapter"""

    def __init__(self, message: str, package_id: Optional[str] = None):
        super().__init__(message)
        self.package_id = package_id


class UnpackError(AdapterError):
    pass


class InstallError(AdapterError):
    """apply() failed; `partial` describes files already written, if any"""

    def __init__(self, message: str, package_id: Optional[str] = None, partial=None):
        super().__init__(message, package_id)
        self.partial = partial


class RemoveError(AdapterError):
    pass


class RevertError(AdapterError):
    pass


class AdapterTimeout(AdapterError):
    """An adapter call outlived its timeout

    settled tells whether the call finished before the engine gave up waiting;
    completed and result describe a call that finished without error anyway.
    partial holds what a late apply put in place, failed or not.
    """

    def __init__(self, message: str, package_id: Optional[str] = None, settled: bool = True,
                 completed: bool = False, result=None, partial=None):
        super().__init__(message, package_id)
        self.settled = settled
        self.completed = completed
        self.result = result
        self.partial = partial


class FetchError(AdapterError):
    """Network or backend retrieval failed"""
    pass


# ==================== Transaction Errors ====================

class TransactionError(UPMError):
    pass


class LeaseHeldError(TransactionError):
    """Another transaction holds the installed-state lease"""

    def __init__(self, holder: Optional[str], message: Optional[str] = None):
        super().__init__(message or f"Installed state is locked by operation {holder}")
        self.holder = holder


class StalePlanError(TransactionError):
    """The installed state changed after the plan was computed"""
    pass


class InvalidTransition(TransactionError):
    pass


class PartialFailure(UPMError):
    """Rollback itself failed; operator intervention is required

    Attributes:
        operation: The failed Operation
        affected: Mapping of package id to its last-known state
    """

    def __init__(self, operation, affected: Dict[str, str]):
        packages = ", ".join(f"{pkg_id} ({state})" for pkg_id, state in sorted(affected.items()))
        super().__init__(f"Rollback of operation {operation.id} failed; indeterminate packages: {packages}")
        self.operation = operation
        self.affected = dict(affected)

    @property
    def package_ids(self) -> List[str]:
        return sorted(self.affected)


class SnapshotError(UPMError):
    pass


# ==================== Infrastructure Errors ====================

class DatabaseError(UPMError, RuntimeError):
    pass


class ConfigError(UPMError, ValueError):
    pass
