"""
Transaction engine for Unified Package Manager
Executes plans under an exclusive lease, snapshots the installed set first
and rolls every applied step back when a step fails or is cancelled.
"""

import hashlib
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional

from upm.adapters.registry import AdapterRegistry
from upm.config import Config
from upm.database import Database, utcnow
from upm.errors import (AdapterError, AdapterTimeout, DatabaseError, InstallError, LeaseHeldError,
                        PartialFailure, SnapshotError, StalePlanError)
from upm.fetcher import Fetcher
from upm.logger import get_logger
from upm.models import (Applied, FileEntry, Operation, OperationStatus, Package, PackageAction, Plan,
                        PlanStep, Snapshot, SnapshotEntry)

CANCELLED = "cancelled"


def manifest_digest(files: List[FileEntry]) -> str:
    """Digest of a file manifest, independent of entry order"""
    lines = sorted(f"{f.path}\0{f.permissions:o}\0{f.file_type}\0{f.digest or ''}" for f in files)
    return hashlib.sha256("\n".join(lines).encode()).hexdigest()


def commit_hash(entries: List[SnapshotEntry]) -> str:
    """Identity of an installed set: sha256 over its sorted entries"""
    lines = sorted(f"{e.package_id}\0{e.version}\0{e.manifest_digest}" for e in entries)
    return hashlib.sha256("\n".join(lines).encode()).hexdigest()


@dataclass
class _LogEntry:
    """One applied step, with what is needed to undo it"""
    step: PlanStep
    applied: Optional[Applied] = None
    previous_files: List[FileEntry] = field(default_factory=list)
    partial: bool = False  # apply failed midway and its revert did not succeed
    unsettled: bool = False  # adapter call still running when the engine stopped waiting


class TransactionEngine:
    """Runs plans as all-or-nothing operations

    Adapter calls execute on a small thread pool so that each call can be
    bounded by Config.adapter_timeout. Steps themselves run one at a time.
    """

    def __init__(self, db: Database, adapters: AdapterRegistry, fetcher: Fetcher,
                 resolver=None, config: Optional[Config] = None, logger=None):
        self.db = db
        self.adapters = adapters
        self.fetcher = fetcher
        self.resolver = resolver
        self.config = config or Config()
        self.logger = logger or get_logger()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="upm-adapter")
        self._cancel_events: Dict[str, threading.Event] = {}
        self._artifacts: List[Path] = []
        self._lock = threading.Lock()

    # ==================== Public API ====================

    def execute(self, plan: Plan, operation_id: Optional[str] = None) -> Operation:
        """
        Execute a plan

        Returns:
            The Operation, completed or rolled back

        Raises:
            LeaseHeldError: If another operation is running
            StalePlanError: If the installed state changed since resolution
            PartialFailure: If rollback could not restore the previous state
        """
        operation = Operation(
            id=operation_id or str(uuid.uuid4()),
            operation_type=plan.operation_type,
            packages=plan.package_ids,
        )
        displaced = self.db.acquire_lease(operation.id, self.config.lease_ttl)
        if displaced:
            self.logger.log_warning(f"Took over expired lease of operation {displaced}")

        event = threading.Event()
        with self._lock:
            self._cancel_events[operation.id] = event
        self._artifacts = []
        try:
            current = self.db.state_version()
            if current != plan.state_version:
                raise StalePlanError(
                    f"Installed state changed since the plan was computed "
                    f"(version {plan.state_version}, now {current}); resolve again"
                )
            # No Operation row exists until its snapshot does
            snapshot = self._take_snapshot(operation)
            operation.snapshot_id = snapshot.id
            self.db.save_operation(operation)
            self._start(operation)
            self.logger.log_operation_start(operation, snapshot)
            return self._run(plan, operation, event)
        finally:
            with self._lock:
                self._cancel_events.pop(operation.id, None)
            self._release_artifacts()
            self.db.release_lease(operation.id)

    def cancel(self, operation_id: str) -> bool:
        """Request cancellation; honored at the next step boundary"""
        with self._lock:
            event = self._cancel_events.get(operation_id)
        if event is None:
            return False
        event.set()
        self.logger.log_info(f"Cancellation requested for operation {operation_id}")
        return True

    def rollback(self, snapshot_id: str) -> Operation:
        """Return the installed set to a snapshot through a new transaction

        Raises:
            SnapshotError: If the snapshot is unknown or no longer restorable
        """
        snapshot = self.db.get_snapshot(snapshot_id)
        if snapshot is None:
            raise SnapshotError(f"Snapshot {snapshot_id} not found")
        if not snapshot.can_rollback:
            raise SnapshotError(f"Snapshot {snapshot_id} can no longer be rolled back")
        if self.resolver is None:
            raise SnapshotError("Rollback requires a resolver")

        self.logger.log_info(f"Rolling back to snapshot {snapshot_id} [{snapshot.commit_hash[:12]}]")
        plan = self.resolver.plan_restore(self.db.get_snapshot_entries(snapshot_id))
        return self.execute(plan)

    def recover_interrupted(self) -> List[Operation]:
        """Fail operations left pending or running by a process that died, and drop expired leases"""
        dropped = self.db.drop_expired_lease()
        if dropped:
            self.logger.log_warning(f"Dropped expired lease of operation {dropped}")
        holder = self.db.get_lease_holder()

        recovered = []
        for status in (OperationStatus.PENDING, OperationStatus.RUNNING):
            for operation in self.db.list_operations(limit=1000, status=status):
                if operation.id == holder:
                    continue
                operation.transition(OperationStatus.FAILED)
                operation.error_message = "interrupted"
                operation.completed_at = utcnow()
                self.db.save_operation(operation)
                self.logger.log_warning(
                    f"Operation {operation.id} was interrupted; "
                    f"snapshot {operation.snapshot_id} can restore the previous state"
                )
                recovered.append(operation)
        return recovered

    def close(self):
        self._executor.shutdown(wait=False)

    # ==================== Snapshots ====================

    def _take_snapshot(self, operation: Operation) -> Snapshot:
        installed = self.db.installed_packages()
        entries = [
            SnapshotEntry(p.id, p.installed_version, manifest_digest(self.db.get_files(p.id)))
            for p in installed
        ]
        snapshot = Snapshot(
            id=str(uuid.uuid4()),
            commit_hash=commit_hash(entries),
            description=f"Before {operation.operation_type.value} of {', '.join(operation.packages) or 'nothing'}",
            size_bytes=sum(p.size_bytes or 0 for p in installed),
            can_rollback=True,
            created_at=utcnow(),
        )
        self.db.create_snapshot(snapshot, entries)
        return snapshot

    # ==================== Execution ====================

    def _start(self, operation: Operation):
        operation.started_at = utcnow()
        operation.transition(OperationStatus.RUNNING)
        try:
            self.db.save_operation(operation)
        except DatabaseError as e:
            operation.transition(OperationStatus.FAILED)
            operation.error_message = f"Could not start: {e}"
            operation.completed_at = utcnow()
            # If this write fails too, recover_interrupted fails the pending row later
            self.db.save_operation(operation)
            raise

    def _renew_lease(self, operation: Operation):
        self.db.renew_lease(operation.id, self.config.lease_ttl)

    def _run(self, plan: Plan, operation: Operation, event: threading.Event) -> Operation:
        log: List[_LogEntry] = []
        for step in plan.steps:
            if event.is_set():
                return self._abort(operation, log, CANCELLED)
            try:
                self._renew_lease(operation)
                self._run_step(operation, step, log)
            except (AdapterError, DatabaseError, LeaseHeldError) as e:
                return self._abort(operation, log, f"{step}: {e}")

        for entry in log:
            if entry.applied is not None:
                self._discard(entry.step.package.id, entry.applied)

        now = utcnow()
        self.db.touch_installed_time(
            [step.package.id for step in plan.steps if step.action != PackageAction.REMOVE], now
        )
        operation.transition(OperationStatus.COMPLETED)
        operation.completed_at = now
        self.db.save_operation(operation)
        self.logger.log_operation_finished(operation)
        return operation

    def _run_step(self, operation: Operation, step: PlanStep, log: List[_LogEntry]):
        package = step.package
        adapter = self.adapters.for_package(package.id)
        previous_files = self.db.get_files(package.id) if step.previous is not None else []

        if step.action == PackageAction.REMOVE:
            finished_late = []

            def remove():
                try:
                    return self._call(package.id, adapter.remove, package)
                except AdapterTimeout as e:
                    if e.completed:
                        finished_late.append(e)
                    raise

            try:
                self._attempt(operation, step, log, remove)
            except AdapterError:
                if finished_late:
                    # The package is gone even though the step failed; rollback reinstalls it
                    log.append(_LogEntry(step, None, previous_files))
                raise
            log.append(_LogEntry(step, None, previous_files))
            self.db.set_installed_state(package, None)
            return

        applied = self._attempt(operation, step, log, lambda: self._install(adapter, package))
        log.append(_LogEntry(step, applied, previous_files))
        self.db.set_installed_state(package, package.version, utcnow(), applied.files)

    def _attempt(self, operation: Operation, step: PlanStep, log: List[_LogEntry], action: Callable):
        """Run a step action, retrying adapter failures up to max_retries times"""
        attempts = self.config.max_retries + 1
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self._renew_lease(operation)
            self.logger.log_step(step, attempt)
            try:
                return action()
            except AdapterError as e:
                if isinstance(e, AdapterTimeout) and not e.settled:
                    log.append(_LogEntry(step, None, self.db.get_files(step.package.id), unsettled=True))
                    raise
                partial = e.partial if isinstance(e, (InstallError, AdapterTimeout)) else None
                if partial is not None and not self._revert_partial(step, partial):
                    log.append(_LogEntry(step, partial, self.db.get_files(step.package.id), partial=True))
                    raise
                if attempt == attempts:
                    raise
                self.logger.log_step_retry(step, e, attempt)

    def _revert_partial(self, step: PlanStep, partial: Applied) -> bool:
        adapter = self.adapters.for_package(step.package.id)
        try:
            self._call_settled(step.package.id, adapter.revert, partial)
        except AdapterError as e:
            self.logger.log_error(f"Could not revert partial install of {step.package}", e)
            return False
        return True

    def _install(self, adapter, package: Package, call: Optional[Callable] = None) -> Applied:
        call = call or self._call
        artifact = None
        if package.download_url:
            artifact = call(package.id, self.fetcher.download, package.download_url, package.checksum)
            self._artifacts.append(artifact)
        staged = call(package.id, adapter.stage, package, artifact)
        return call(package.id, adapter.apply, staged)

    def _discard(self, package_id: str, applied: Applied):
        """Drop rollback data of a step that no longer needs undoing"""
        adapter = self.adapters.for_package(package_id)
        try:
            self._call(package_id, adapter.discard, applied)
        except AdapterError as e:
            self.logger.log_warning(f"Could not discard rollback data of {applied.package}: {e}")

    def _release_artifacts(self):
        for artifact in self._artifacts:
            self.fetcher.release(artifact)
        self._artifacts = []

    def _call(self, package_id: str, fn: Callable, *args):
        """Run one adapter call bounded by the adapter timeout"""
        timeout = self.config.adapter_timeout
        name = getattr(fn, '__name__', repr(fn))
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as e:
            if future.done() and future.exception() is e:
                # TimeoutError raised by the call itself
                raise AdapterError(f"{name} failed: {e}", package_id) from e
            raise self._timed_out(future, package_id, f"{name} timed out after {timeout:g}s")
        except AdapterError:
            raise
        except (OSError, ValueError, RuntimeError) as e:
            raise AdapterError(f"{name} failed: {e}", package_id) from e

    def _timed_out(self, future, package_id: str, message: str) -> AdapterTimeout:
        """Wait up to Config.timeout_grace for a call that outlived its timeout

        The call keeps running on its worker thread; whatever it did has to be
        known before rollback starts.
        """
        grace = self.config.timeout_grace
        self.logger.log_warning(f"{message} for {package_id}; waiting up to {grace:g}s for it to finish")
        done, _ = wait([future], timeout=grace)
        if not done:
            return AdapterTimeout(f"{message} and did not finish", package_id, settled=False)

        error = future.exception()
        if error is None:
            result = future.result()
            partial = result if isinstance(result, Applied) else None
            return AdapterTimeout(message, package_id, completed=True, result=result, partial=partial)
        return AdapterTimeout(f"{message} ({error})", package_id, partial=getattr(error, 'partial', None))

    def _call_settled(self, package_id: str, fn: Callable, *args):
        """Like _call, but a call that finishes within the grace period counts as done"""
        try:
            return self._call(package_id, fn, *args)
        except AdapterTimeout as e:
            if not e.completed:
                raise
            self.logger.log_warning(f"{e}; it finished late and is accepted")
            return e.result

    # ==================== Rollback ====================

    def _abort(self, operation: Operation, log: List[_LogEntry], reason: str) -> Operation:
        self.logger.log_rollback(operation, reason)
        operation.error_message = reason
        if reason != CANCELLED:
            operation.transition(OperationStatus.FAILED)
            self.db.save_operation(operation)

        try:
            self._renew_lease(operation)
        except (LeaseHeldError, DatabaseError) as e:
            # Changes made by this operation are still undone
            self.logger.log_error(f"Rolling back operation {operation.id} without the lease", e)

        affected = self._rollback_log(log)
        operation.completed_at = utcnow()
        if affected:
            if operation.status == OperationStatus.RUNNING:
                operation.transition(OperationStatus.FAILED)
            self.db.save_operation(operation)
            if operation.snapshot_id:
                self.db.disable_snapshot_rollback(operation.snapshot_id)
            error = PartialFailure(operation, affected)
            self.logger.log_partial_failure(error)
            raise error

        operation.transition(OperationStatus.ROLLED_BACK)
        self.db.save_operation(operation)
        self.logger.log_operation_finished(operation)
        return operation

    def _rollback_log(self, log: List[_LogEntry]) -> Dict[str, str]:
        """Undo applied steps newest first; returns packages left indeterminate"""
        affected: Dict[str, str] = {}
        for entry in reversed(log):
            step = entry.step
            if entry.unsettled:
                self.logger.log_error(f"'{step}' is still running; it cannot be undone")
                affected[step.package.id] = f"{step.action.value} of {step.package.version} still running"
                continue
            self.logger.log_rollback_step(f"undo {step}")
            try:
                self._undo(entry)
            except (AdapterError, DatabaseError) as e:
                self.logger.log_error(f"Rollback of '{step}' failed", e)
                affected[step.package.id] = f"{step.action.value} of {step.package.version} not undone"
        return affected

    def _previous_record(self, step: PlanStep) -> Package:
        previous = step.previous
        record = self.db.get_candidate(previous.id, previous.installed_version)
        return record or replace(previous, version=previous.installed_version)

    def _undo(self, entry: _LogEntry):
        step = entry.step
        package = step.package
        adapter = self.adapters.for_package(package.id)

        if entry.applied is not None:
            self._call_settled(package.id, adapter.revert, entry.applied)

        if step.previous is None:
            self.db.set_installed_state(package, None)
            return

        old = self._previous_record(step)
        files = entry.previous_files
        if step.action == PackageAction.REMOVE or (not entry.partial and step.action in (
                PackageAction.UPGRADE, PackageAction.REINSTALL)):
            applied = self._install(adapter, old, call=self._call_settled)
            self._discard(old.id, applied)
            files = applied.files
        self.db.set_installed_state(old, old.version, step.previous.installed_time, files)
