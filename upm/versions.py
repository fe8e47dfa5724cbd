"""
Version comparison for the Unified Package Manager
Each backend orders its own versions; constraints are evaluated against the
comparator registered for the backend id prefix of a package.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Dict, Iterable, List, Optional, Tuple

from packaging.version import InvalidVersion, Version

_DIGITS = "0123456789"

# Longest operators first so that '>=' is not read as '>'
OPERATORS = (">=", "<=", ">>", "<<", "==", "!=", ">", "<", "=")
_NORMALIZED_OPS = {">>": ">", "<<": "<", "==": "="}


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def _char(text: str, index: int) -> str:
    return text[index] if index < len(text) else ""


# ==================== Debian ====================

def _deb_order(c: str) -> int:
    if not c or c in _DIGITS:
        return 0
    if c.isascii() and c.isalpha():
        return ord(c)
    if c == "~":
        return -1
    return ord(c) + 256


def _verrevcmp(a: str, b: str) -> int:
    """dpkg's fragment comparison; '~' sorts before everything, even the end"""
    i = j = 0
    while i < len(a) or j < len(b):
        first_diff = 0
        while (i < len(a) and a[i] not in _DIGITS) or (j < len(b) and b[j] not in _DIGITS):
            ac = _deb_order(_char(a, i))
            bc = _deb_order(_char(b, j))
            if ac != bc:
                return ac - bc
            i += 1
            j += 1
        while _char(a, i) == "0":
            i += 1
        while _char(b, j) == "0":
            j += 1
        while i < len(a) and a[i] in _DIGITS and j < len(b) and b[j] in _DIGITS:
            if not first_diff:
                first_diff = ord(a[i]) - ord(b[j])
            i += 1
            j += 1
        if i < len(a) and a[i] in _DIGITS:
            return 1
        if j < len(b) and b[j] in _DIGITS:
            return -1
        if first_diff:
            return first_diff
    return 0


def _split_epoch(version: str) -> Tuple[int, str]:
    epoch, sep, rest = version.partition(":")
    if sep and epoch.isdigit():
        return int(epoch), rest
    return 0, version


class VersionComparator(ABC):
    """Total order over one ecosystem's version strings"""

    name = "generic"

    @abstractmethod
    def compare(self, a: str, b: str) -> int:
        """Return -1, 0 or 1"""
        pass

    def sort_key(self):
        return cmp_to_key(self.compare)

    def sorted(self, versions: Iterable[str], reverse: bool = False) -> List[str]:
        return sorted(versions, key=self.sort_key(), reverse=reverse)

    def satisfies(self, version: str, constraint: Optional[str]) -> bool:
        return satisfies(version, constraint, self)

    def intersects(self, a: Optional[str], b: Optional[str]) -> bool:
        return intersects(a, b, self)


class DebianComparator(VersionComparator):
    """[epoch:]upstream[-revision] ordering as implemented by dpkg"""

    name = "debian"

    def compare(self, a: str, b: str) -> int:
        epoch_a, rest_a = _split_epoch(a)
        epoch_b, rest_b = _split_epoch(b)
        if epoch_a != epoch_b:
            return _sign(epoch_a - epoch_b)
        upstream_a, _, revision_a = rest_a.rpartition("-") if "-" in rest_a else (rest_a, "", "")
        upstream_b, _, revision_b = rest_b.rpartition("-") if "-" in rest_b else (rest_b, "", "")
        result = _verrevcmp(upstream_a, upstream_b)
        if result:
            return _sign(result)
        return _sign(_verrevcmp(revision_a, revision_b))


# ==================== RPM ====================

def _rpmvercmp(a: str, b: str) -> int:
    """rpm's segment comparison, including '~' (pre-release) and '^' (post-release)"""
    if a == b:
        return 0
    i = j = 0
    while i < len(a) or j < len(b):
        while i < len(a) and not a[i].isalnum() and a[i] not in "~^":
            i += 1
        while j < len(b) and not b[j].isalnum() and b[j] not in "~^":
            j += 1

        ca, cb = _char(a, i), _char(b, j)
        if ca == "~" or cb == "~":
            if ca != "~":
                return 1
            if cb != "~":
                return -1
            i += 1
            j += 1
            continue

        if ca == "^" or cb == "^":
            if not ca:
                return -1
            if not cb:
                return 1
            if ca != "^":
                return 1
            if cb != "^":
                return -1
            i += 1
            j += 1
            continue

        if not (ca and cb):
            break

        start_a, start_b = i, j
        is_num = ca in _DIGITS
        if is_num:
            while i < len(a) and a[i] in _DIGITS:
                i += 1
            while j < len(b) and b[j] in _DIGITS:
                j += 1
        else:
            while i < len(a) and a[i].isascii() and a[i].isalpha():
                i += 1
            while j < len(b) and b[j].isascii() and b[j].isalpha():
                j += 1

        seg_a, seg_b = a[start_a:i], b[start_b:j]
        if not seg_b:
            # numeric segments are newer than alpha ones
            return 1 if is_num else -1

        if is_num:
            seg_a = seg_a.lstrip("0")
            seg_b = seg_b.lstrip("0")
            if len(seg_a) != len(seg_b):
                return _sign(len(seg_a) - len(seg_b))
        if seg_a != seg_b:
            return -1 if seg_a < seg_b else 1

    if i >= len(a) and j >= len(b):
        return 0
    return -1 if i >= len(a) else 1


class RpmComparator(VersionComparator):
    """[epoch:]version[-release] ordering as implemented by rpm (also pacman)"""

    name = "rpm"

    def compare(self, a: str, b: str) -> int:
        epoch_a, rest_a = _split_epoch(a)
        epoch_b, rest_b = _split_epoch(b)
        if epoch_a != epoch_b:
            return _sign(epoch_a - epoch_b)
        version_a, _, release_a = rest_a.partition("-")
        version_b, _, release_b = rest_b.partition("-")
        result = _rpmvercmp(version_a, version_b)
        if result or not (release_a and release_b):
            return result
        return _rpmvercmp(release_a, release_b)


# ==================== Semantic ====================

class SemanticComparator(VersionComparator):
    """PEP 440 / semver-style ordering, generic fragment ordering otherwise"""

    name = "semantic"

    def compare(self, a: str, b: str) -> int:
        try:
            va, vb = Version(a), Version(b)
        except InvalidVersion:
            return _sign(_verrevcmp(a, b))
        return (va > vb) - (va < vb)


# ==================== Constraints ====================

@dataclass(frozen=True)
class Clause:
    op: str  # one of '>=', '<=', '>', '<', '=', '!='
    version: str

    def __str__(self) -> str:
        return f"{self.op}{self.version}"


def parse_constraint(constraint: Optional[str]) -> List[Clause]:
    """Parse a comma-separated conjunction of clauses

    A bare version means equality. Empty, None or '*' means any version.

    Raises:
        ValueError: If a clause has no version
    """
    if constraint is None:
        return []
    clauses = []
    for part in constraint.split(","):
        part = part.strip()
        if not part or part == "*":
            continue
        op = next((candidate for candidate in OPERATORS if part.startswith(candidate)), "=")
        version = part[len(op):].strip() if part.startswith(op) else part
        if not version:
            raise ValueError(f"Invalid version constraint '{constraint}'")
        clauses.append(Clause(_NORMALIZED_OPS.get(op, op), version))
    return clauses


def _clause_holds(clause: Clause, version: str, comparator: VersionComparator) -> bool:
    result = comparator.compare(version, clause.version)
    return {
        ">=": result >= 0,
        "<=": result <= 0,
        ">": result > 0,
        "<": result < 0,
        "=": result == 0,
        "!=": result != 0,
    }[clause.op]


def satisfies(version: str, constraint: Optional[str], comparator: VersionComparator) -> bool:
    """Check whether version meets every clause of constraint"""
    return all(_clause_holds(clause, version, comparator) for clause in parse_constraint(constraint))


def intersects(a: Optional[str], b: Optional[str], comparator: VersionComparator) -> bool:
    """Check whether some version could satisfy both constraints

    Works on the bounds alone, so it does not need a candidate list.
    """
    clauses = parse_constraint(a) + parse_constraint(b)
    lower: Optional[Clause] = None
    upper: Optional[Clause] = None
    pins = [c.version for c in clauses if c.op == "="]
    excluded = [c.version for c in clauses if c.op == "!="]

    for clause in clauses:
        if clause.op in (">", ">="):
            if lower is None:
                lower = clause
            else:
                cmp = comparator.compare(clause.version, lower.version)
                if cmp > 0 or (cmp == 0 and clause.op == ">"):
                    lower = clause
        elif clause.op in ("<", "<="):
            if upper is None:
                upper = clause
            else:
                cmp = comparator.compare(clause.version, upper.version)
                if cmp < 0 or (cmp == 0 and clause.op == "<"):
                    upper = clause

    if pins:
        pin = pins[0]
        if any(comparator.compare(pin, other) != 0 for other in pins[1:]):
            return False
        return all(_clause_holds(clause, pin, comparator) for clause in clauses)

    if lower is not None and upper is not None:
        cmp = comparator.compare(lower.version, upper.version)
        if cmp > 0:
            return False
        if cmp == 0:
            if lower.op != ">=" or upper.op != "<=":
                return False
            return all(comparator.compare(lower.version, v) != 0 for v in excluded)
    return True


# ==================== Registry ====================

_DEBIAN = DebianComparator()
_RPM = RpmComparator()
_SEMANTIC = SemanticComparator()

_COMPARATORS: Dict[str, VersionComparator] = {
    "apt": _DEBIAN,
    "deb": _DEBIAN,
    "dpkg": _DEBIAN,
    "rpm": _RPM,
    "dnf": _RPM,
    "yum": _RPM,
    "zypper": _RPM,
    "pacman": _RPM,
}


def register_comparator(backend_id: str, comparator: VersionComparator):
    """Register the version ordering used for a backend id prefix"""
    _COMPARATORS[backend_id] = comparator


def comparator_for(backend_id: str) -> VersionComparator:
    """Get the comparator for a backend id, semantic ordering by default"""
    return _COMPARATORS.get(backend_id, _SEMANTIC)
