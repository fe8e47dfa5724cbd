"""
Dependency resolver for Unified Package Manager
Turns install/remove/update requests into an ordered Plan over packages of
any backend, using one consistent read of the installed state.
"""

import heapq
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from upm.database import Database, InstalledStateView
from upm.errors import Conflict, CyclicDependency, NotFound, ResolutionError
from upm.logger import get_logger
from upm.models import (DependencyEdge, OperationType, Package, PackageAction, PackageRequest, Plan,
                        PlanStep, ResolveRequest, SnapshotEntry)
from upm.repositories import RepositoryRegistry
from upm.versions import intersects, satisfies

REQUEST = "(request)"

Constraint = Tuple[str, Optional[str]]  # (source, constraint)


def order_steps(nodes: Iterable[str], prereqs: Dict[str, Iterable[str]],
                breakable: Callable[[str], bool]) -> List[str]:
    """Topologically order nodes so that prerequisites come first, ties by id

    A cycle is broken by dropping one edge whose target satisfies `breakable`.

    Raises:
        CyclicDependency: If a cycle has no breakable edge
    """
    nodes = set(nodes)
    waiting = {node: {p for p in prereqs.get(node, ()) if p in nodes and p != node} for node in nodes}
    unlocks: Dict[str, Set[str]] = {node: set() for node in nodes}
    for node, before in waiting.items():
        for prerequisite in before:
            unlocks[prerequisite].add(node)

    ready = [node for node, before in waiting.items() if not before]
    heapq.heapify(ready)
    order: List[str] = []
    remaining = set(nodes)

    while remaining:
        if not ready:
            cycle = _find_cycle(waiting, remaining)
            edge = next(((a, b) for a, b in zip(cycle, cycle[1:]) if breakable(b)), None)
            if edge is None:
                raise CyclicDependency(cycle)
            a, b = edge
            waiting[a].discard(b)
            unlocks[b].discard(a)
            if not waiting[a]:
                heapq.heappush(ready, a)
            continue

        node = heapq.heappop(ready)
        order.append(node)
        remaining.discard(node)
        for follower in unlocks[node]:
            waiting[follower].discard(node)
            if not waiting[follower]:
                heapq.heappush(ready, follower)
    return order


def _find_cycle(waiting: Dict[str, Set[str]], remaining: Set[str]) -> List[str]:
    current = min(remaining)
    path = [current]
    seen = {current: 0}
    while True:
        current = min(waiting[current])
        if current in seen:
            return path[seen[current]:] + [current]
        seen[current] = len(path)
        path.append(current)


@dataclass(frozen=True)
class _State:
    """One node of the search; copied, never mutated"""
    selected: Dict[str, Package] = field(default_factory=dict)
    requirements: Dict[str, Tuple[Constraint, ...]] = field(default_factory=dict)
    edges: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    queue: Tuple[str, ...] = ()


class Resolver:
    """Computes plans from requests

    Installs and updates run a backtracking search: nodes are taken from a
    FIFO queue, candidates are tried highest version first, and the latest
    choice point is revisited when a branch fails.
    """

    def __init__(self, db: Database, repositories: RepositoryRegistry,
                 max_steps: int = 10000, logger=None):
        self.db = db
        self.repositories = repositories
        self.adapters = repositories.adapters
        self.max_steps = max_steps
        self.logger = logger or get_logger()

    def resolve(self, request: ResolveRequest) -> Plan:
        """
        Build a plan for a request

        Raises:
            NotFound: Unknown package or backend
            Conflict: Two requirements on one package cannot both hold
            CyclicDependency: New packages depend on each other in a cycle
            ResolutionError: No combination of versions satisfies the request
        """
        self.logger.log_resolve(request.operation_type.value, [str(item) for item in request.items])
        try:
            view = self.db.read_view()
            if request.operation_type == OperationType.UNINSTALL:
                plan = self._plan_removal(request, view)
            else:
                plan = _Search(self, request, view).run()
        except ResolutionError as e:
            self.logger.log_resolution_failure(e)
            raise
        self.logger.log_plan(plan)
        return plan

    # ==================== Names ====================

    def _rank(self, package: Package) -> Tuple[int, str]:
        return self.repositories.priority_of(package), package.backend_id

    def resolve_name(self, item: PackageRequest, view: InstalledStateView,
                     prefer_installed: bool = False) -> str:
        """Map a request to a backend-qualified package id"""
        if item.backend:
            package_id = item.package_id
            if package_id in view.packages:
                return package_id
            if item.backend not in self.adapters:
                raise NotFound(f"backend '{item.backend}'")
            if not self.repositories.candidates(package_id):
                raise NotFound(package_id)
            return package_id

        if prefer_installed:
            installed = sorted((p for p in view.packages.values() if p.name == item.name), key=self._rank)
            if installed:
                return installed[0].id
        matches = self.repositories.find(item.name)
        if not matches:
            raise NotFound(item.name)
        return matches[0].id

    def installed_record(self, view: InstalledStateView, package_id: str) -> Package:
        """Package record of the installed version"""
        installed = view.packages[package_id]
        record = self.db.get_candidate(package_id, installed.installed_version)
        if record is None:
            record = replace(installed, version=installed.installed_version)
        return record

    # ==================== Removal ====================

    def _removal_target(self, item: PackageRequest, view: InstalledStateView) -> Optional[str]:
        if item.backend:
            return item.package_id if item.package_id in view.packages else None
        installed = sorted((p for p in view.packages.values() if p.name == item.name), key=self._rank)
        if installed:
            return installed[0].id
        if self.db.find_packages(item.name):
            return None
        raise NotFound(item.name)

    def _removal_order(self, view: InstalledStateView, nodes: Iterable[str]) -> List[str]:
        nodes = set(nodes)
        prereqs = {node: [e.package_id for e in view.dependents(node) if e.package_id in nodes]
                   for node in nodes}
        return order_steps(nodes, prereqs, breakable=lambda _: True)

    def _add_unneeded_dependencies(self, view: InstalledStateView, closure: Set[str]):
        """Grow closure with installed dependencies that only removed packages depend on

        A dependency is looked at again each time another of its dependents
        joins the closure, so the result does not depend on visiting order.
        """
        frontier = sorted(closure)
        while frontier:
            for edge in view.edges.get(frontier.pop(), []):
                dependency_id = edge.dependency_id
                if edge.is_optional or dependency_id in closure or dependency_id not in view.packages:
                    continue
                if all(dependent.package_id in closure for dependent in view.dependents(dependency_id)):
                    closure.add(dependency_id)
                    frontier.append(dependency_id)

    def _plan_removal(self, request: ResolveRequest, view: InstalledStateView) -> Plan:
        targets: List[str] = []
        for item in request.items:
            package_id = self._removal_target(item, view)
            if package_id is None:
                self.logger.log_info(f"{item} is not installed; nothing to remove")
            elif package_id not in targets:
                targets.append(package_id)

        if request.force:
            order = targets
        else:
            closure = set(targets)
            frontier = list(targets)
            while frontier:
                for edge in view.dependents(frontier.pop()):
                    if not edge.is_optional and edge.package_id not in closure:
                        closure.add(edge.package_id)
                        frontier.append(edge.package_id)
            if request.remove_dependencies:
                self._add_unneeded_dependencies(view, closure)
            order = self._removal_order(view, closure)

        steps = [PlanStep(self.installed_record(view, package_id), PackageAction.REMOVE,
                          previous=view.packages[package_id]) for package_id in order]
        return Plan(OperationType.UNINSTALL, steps, view.state_version)

    # ==================== Restore ====================

    def plan_restore(self, entries: List[SnapshotEntry]) -> Plan:
        """Plan that returns the installed set to the recorded entries

        Removals come first (dependents first), then installs and version
        changes (dependencies first).

        Raises:
            NotFound: If a recorded version is no longer known
        """
        view = self.db.read_view()
        target = {entry.package_id: entry.version for entry in entries}

        removals = self._removal_order(view, [p for p in view.packages if p not in target])
        steps = [PlanStep(self.installed_record(view, package_id), PackageAction.REMOVE,
                          previous=view.packages[package_id]) for package_id in removals]

        changes: Dict[str, PlanStep] = {}
        for package_id, version in target.items():
            installed = view.packages.get(package_id)
            if installed is not None and installed.installed_version == version:
                continue
            package = self.db.get_candidate(package_id, version)
            if package is None:
                raise NotFound(f"{package_id}@{version}")
            action = PackageAction.UPGRADE if installed is not None else PackageAction.INSTALL
            changes[package_id] = PlanStep(package, action, previous=installed)

        prereqs = {
            package_id: [e.dependency_id for e in self.repositories.dependencies(step.package)]
            for package_id, step in changes.items()
        }
        steps.extend(changes[package_id] for package_id in order_steps(changes, prereqs, lambda _: True))

        plan = Plan(OperationType.UPDATE, steps, view.state_version)
        self.logger.log_plan(plan)
        return plan


class _Search:
    """Backtracking search for one install/update request"""

    def __init__(self, resolver: Resolver, request: ResolveRequest, view: InstalledStateView):
        self.resolver = resolver
        self.request = request
        self.view = view
        self.update = request.operation_type == OperationType.UPDATE
        self.roots: List[str] = []
        self.failures: List[ResolutionError] = []
        self._candidates: Dict[str, List[Package]] = {}
        self._edges: Dict[Tuple[str, str], List[DependencyEdge]] = {}

    def run(self) -> Plan:
        requirements: Dict[str, Tuple[Constraint, ...]] = {}
        if self.update and not self.request.items:
            self.roots = sorted(self.view.packages)
        for item in self.request.items:
            package_id = self.resolver.resolve_name(item, self.view, prefer_installed=self.update)
            if self.update and package_id not in self.view.packages:
                raise NotFound(f"installed package '{item}'")
            if package_id not in self.roots:
                self.roots.append(package_id)
            requirements[package_id] = requirements.get(package_id, ()) + ((REQUEST, item.constraint),)

        stack: List[Iterator[_State]] = [iter([_State(requirements=requirements, queue=tuple(self.roots))])]
        steps = 0
        while stack:
            state = next(stack[-1], None)
            if state is None:
                stack.pop()
                continue
            steps += 1
            if steps > self.resolver.max_steps:
                raise ResolutionError(f"Resolution gave up after {self.resolver.max_steps} steps")

            if not state.queue:
                try:
                    return self._build_plan(state)
                except CyclicDependency as e:
                    self.failures.append(e)
                    continue

            node = state.queue[0]
            rest = replace(state, queue=state.queue[1:])
            if node in state.selected:
                stack.append(iter([rest]))
            else:
                stack.append(self._expand(rest, node, self._options(state, node)))

        raise self._failure()

    def _failure(self) -> ResolutionError:
        for kind in (Conflict, CyclicDependency, NotFound):
            for failure in self.failures:
                if isinstance(failure, kind):
                    return failure
        if self.failures:
            return self.failures[0]
        return ResolutionError("No installable combination of packages found")

    def _comparator(self, package_id: str):
        return self.resolver.adapters.comparator_for(package_id.partition(":")[0])

    # ==================== Constraints ====================

    def _constraints_for(self, state: _State, package_id: str) -> List[Constraint]:
        """Requirements collected so far plus those of installed dependents

        An installed dependent that is being replaced contributes the edges of
        its new version instead, already part of state.requirements.
        """
        constraints = list(state.requirements.get(package_id, ()))
        for edge in self.view.dependents(package_id):
            chosen = state.selected.get(edge.package_id)
            if chosen is not None and chosen.version != self.view.packages[edge.package_id].installed_version:
                continue
            constraints.append((edge.package_id, edge.version_constraint))
        return constraints

    def _conflict(self, package_id: str, constraints: List[Constraint]) -> Optional[Conflict]:
        comparator = self._comparator(package_id)
        present = [c for _, c in constraints if c]
        for i, first in enumerate(present):
            for second in present[i + 1:]:
                if not intersects(first, second, comparator):
                    return Conflict(package_id, first, second)
        return None

    def _satisfied(self, package: Package, constraints: List[Constraint]) -> bool:
        comparator = self._comparator(package.id)
        return all(satisfies(package.version, c, comparator) for _, c in constraints if c)

    # ==================== Candidates ====================

    def _candidate_list(self, package_id: str) -> List[Package]:
        if package_id not in self._candidates:
            candidates = list(self.resolver.repositories.candidates(package_id))
            installed = self.view.packages.get(package_id)
            if installed is not None and not any(c.version == installed.installed_version for c in candidates):
                candidates.append(self.resolver.installed_record(self.view, package_id))
            comparator = self._comparator(package_id)
            key = comparator.sort_key()
            self._candidates[package_id] = sorted(candidates, key=lambda p: (key(p.version), p.id), reverse=True)
        return self._candidates[package_id]

    def _options(self, state: _State, package_id: str) -> List[Package]:
        constraints = self._constraints_for(state, package_id)
        conflict = self._conflict(package_id, constraints)
        if conflict is not None:
            self.failures.append(conflict)
            return []

        candidates = self._candidate_list(package_id)
        if not candidates:
            self.failures.append(NotFound(package_id))
            return []

        matching = [p for p in candidates if self._satisfied(p, constraints)]
        if not matching:
            wanted = [f"{c} ({source})" for source, c in constraints if c]
            self.failures.append(ResolutionError(
                f"No version of {package_id} satisfies {', '.join(wanted)}", [c for _, c in constraints if c]
            ))
            return []

        installed = self.view.packages.get(package_id)
        if installed is not None and not (self.update and package_id in self.roots):
            kept = [p for p in matching if p.version == installed.installed_version]
            matching = kept + [p for p in matching if p.version != installed.installed_version]
        return matching

    def _included_edges(self, package: Package) -> List[DependencyEdge]:
        if package.key not in self._edges:
            self._edges[package.key] = self.resolver.repositories.dependencies(package)
        return [
            edge for edge in self._edges[package.key]
            if not edge.is_optional
            or self.request.with_optional
            or edge.dependency_id in self.roots
            or self.view.is_installed(edge.dependency_id)
        ]

    # ==================== Search Steps ====================

    def _expand(self, state: _State, package_id: str, options: List[Package]) -> Iterator[_State]:
        for package in options:
            child = self._choose(state, package_id, package)
            if child is not None:
                yield child

    def _choose(self, state: _State, package_id: str, package: Package) -> Optional[_State]:
        selected = dict(state.selected)
        selected[package_id] = package

        installed = self.view.packages.get(package_id)
        if (installed is not None and package.version == installed.installed_version
                and package_id not in self.roots):
            # Kept as installed; its installed edges still bind its dependencies
            return replace(state, selected=selected)

        edges = self._included_edges(package)
        requirements = dict(state.requirements)
        for edge in edges:
            requirements[edge.dependency_id] = (
                requirements.get(edge.dependency_id, ()) + ((package_id, edge.version_constraint),)
            )
        chosen_edges = dict(state.edges)
        chosen_edges[package_id] = tuple(e.dependency_id for e in edges)
        child = _State(selected=selected, requirements=requirements, edges=chosen_edges, queue=state.queue)

        queue = list(state.queue)
        for edge in edges:
            dependency_id = edge.dependency_id
            constraints = self._constraints_for(child, dependency_id)
            conflict = self._conflict(dependency_id, constraints)
            if conflict is not None:
                self.failures.append(conflict)
                return None
            chosen = selected.get(dependency_id)
            if chosen is not None:
                if not self._satisfied(chosen, constraints):
                    self.failures.append(ResolutionError(
                        f"{chosen} does not satisfy '{edge.version_constraint}' required by {package}",
                        [edge.version_constraint]
                    ))
                    return None
            elif dependency_id not in queue:
                queue.append(dependency_id)
        return replace(child, queue=tuple(queue))

    def _build_plan(self, state: _State) -> Plan:
        steps: Dict[str, PlanStep] = {}
        for package_id, package in state.selected.items():
            installed = self.view.packages.get(package_id)
            if installed is None:
                action = PackageAction.INSTALL
            elif package.version != installed.installed_version:
                action = PackageAction.UPGRADE
            elif self.request.reinstall and package_id in self.roots:
                action = PackageAction.REINSTALL
            else:
                continue
            steps[package_id] = PlanStep(package, action, previous=installed)

        prereqs = {package_id: state.edges.get(package_id, ()) for package_id in steps}
        order = order_steps(steps, prereqs, breakable=self.view.is_installed)
        return Plan(self.request.operation_type, [steps[package_id] for package_id in order],
                    self.view.state_version)
