import re
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from upm.adapters.base import BackendAdapter
from upm.errors import (AdapterError, AdapterTimeout, InstallError, NotFound, RemoveError, RevertError,
                         UnpackError)
from upm.models import (Applied, Capability, DependencyEdge, FileEntry, Package, Repository,
                        StagedContents, merge_edges)

_RELATION_RE = re.compile(r'^(?P<name>[^\s(:]+)(?::\S+)?\s*(?:\((?P<op><<|<=|=|>=|>>|<|>)\s*(?P<version>[^)]+)\))?')


def validate_package_name(package_name: str) -> bool:
    """
    Validate package name to prevent command injection

    APT package names must follow Debian naming conventions:
    - Lowercase letters, digits, plus, minus, and dot characters
    - Must start with a lowercase letter or digit
    """
    if not package_name or len(package_name) > 200:
        return False

    # Debian package naming rules
    pattern = r'^[a-z0-9][a-z0-9+.-]*$'
    return bool(re.match(pattern, package_name))


def parse_control_stanzas(text: str) -> List[Dict[str, str]]:
    """Parse RFC822-style records as printed by apt-cache and dpkg"""
    stanzas = []
    current: Dict[str, str] = {}
    key = None
    for line in text.split('\n'):
        if not line.strip():
            if current:
                stanzas.append(current)
            current, key = {}, None
        elif line[0] in ' \t' and key is not None:
            current[key] += '\n' + line.strip()
        elif ':' in line:
            key, value = line.split(':', 1)
            current[key] = value.strip()
    if current:
        stanzas.append(current)
    return stanzas


def parse_relations(field: str) -> List[tuple]:
    """
    Parse a Depends-style field into (name, constraint) pairs

    For alternatives ("a | b") the first one is taken.
    """
    relations = []
    for part in field.split(','):
        part = part.split('|')[0].strip()
        match = _RELATION_RE.match(part)
        if not match:
            continue
        constraint = None
        if match.group('op'):
            constraint = f"{match.group('op')}{match.group('version').strip()}"
        relations.append((match.group('name'), constraint))
    return relations


class AptAdapter(BackendAdapter):
    """Adapter for APT package manager using CLI"""

    backend_id = "apt"
    capabilities = frozenset({
        Capability.RESOLVE_METADATA,
        Capability.INSTALL_FILES,
        Capability.REMOVE_FILES,
    })

    def __init__(self, privileged_prefix: Sequence[str] = ('pkexec',), timeout: int = 300):
        self.privileged_prefix = list(privileged_prefix)
        self.timeout = timeout

    def is_available(self) -> bool:
        """Check if APT is available on the system"""
        return shutil.which('apt-get') is not None

    def _run_command(self, args: List[str], privileged: bool = False,
                     timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        """
        Run an apt/dpkg command

        Raises:
            AdapterTimeout: If the command did not finish in time
            AdapterError: If the command could not be started
        """
        cmd = (self.privileged_prefix if privileged else []) + args
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout
            )
        except subprocess.TimeoutExpired as e:
            raise AdapterTimeout(f"{' '.join(cmd)} timed out") from e
        except OSError as e:
            raise AdapterError(f"Failed to run {args[0]}: {e}") from e

    def _check_name(self, name: str):
        if not validate_package_name(name):
            raise NotFound(f"apt package '{name}' (invalid name)")

    def _to_package(self, stanza: Dict[str, str], repository: Optional[Repository] = None) -> Package:
        size = stanza.get('Size')
        return Package(
            id=self.package_id(stanza['Package']),
            name=stanza['Package'],
            version=stanza['Version'],
            description=stanza.get('Description', '').split('\n')[0],
            repository=repository.name if repository else stanza.get('Section'),
            license=stanza.get('License'),
            size_bytes=int(size) if size and size.isdigit() else None,
        )

    def _show(self, spec: str) -> List[Dict[str, str]]:
        result = self._run_command(['apt-cache', 'show', spec], timeout=30)
        if result.returncode != 0:
            return []
        return [s for s in parse_control_stanzas(result.stdout) if 'Package' in s and 'Version' in s]

    def fetch_metadata(self, repository: Optional[Repository], name: str) -> Package:
        self._check_name(name)
        stanzas = self._show(name)
        if not stanzas:
            raise NotFound(self.package_id(name))
        best = max(stanzas, key=lambda s: self.version_comparator.sort_key()(s['Version']))
        return self._to_package(best, repository)

    def list_packages(self, repository: Repository) -> List[Package]:
        result = self._run_command(['apt-cache', 'dumpavail'], timeout=120)
        if result.returncode != 0:
            raise AdapterError(f"apt-cache dumpavail failed: {result.stderr.strip()}")
        return [self._to_package(s, repository) for s in parse_control_stanzas(result.stdout)
                if 'Package' in s and 'Version' in s]

    def list_dependencies(self, package: Package) -> List[DependencyEdge]:
        stanzas = [s for s in self._show(f"{package.name}={package.version}")
                   if s['Version'] == package.version]
        if not stanzas:
            return []
        stanza = stanzas[0]
        edges = []
        for field, optional in (('Pre-Depends', False), ('Depends', False), ('Recommends', True)):
            for name, constraint in parse_relations(stanza.get(field, '')):
                edges.append(DependencyEdge(package.id, self.package_id(name), constraint, optional))
        return merge_edges(edges)

    def search(self, query: str) -> List[Package]:
        """Search for packages in APT"""
        if not query.strip():
            return []
        result = self._run_command(['apt-cache', 'search', '--full', query], timeout=30)
        if result.returncode != 0:
            return []
        return [self._to_package(s) for s in parse_control_stanzas(result.stdout)
                if 'Package' in s and 'Version' in s][:100]

    def _is_installed(self, name: str) -> bool:
        result = self._run_command(['dpkg-query', '-W', '-f=${Status}', name], timeout=10)
        return result.returncode == 0 and 'install ok installed' in result.stdout

    def _installed_files(self, name: str) -> List[FileEntry]:
        result = self._run_command(['dpkg-query', '-L', name], timeout=30)
        if result.returncode != 0:
            return []
        return [FileEntry(path=line.strip()) for line in result.stdout.split('\n')
                if line.strip().startswith('/')]

    def stage(self, package: Package, artifact: Optional[Path]) -> StagedContents:
        # apt downloads and unpacks on its own during apply()
        if not validate_package_name(package.name):
            raise UnpackError(f"Invalid package name: {package.name}", package.id)
        return StagedContents(package=package, artifact=artifact)

    def apply(self, staged: StagedContents) -> Applied:
        package = staged.package
        result = self._run_command(
            ['apt-get', 'install', '-y', '--allow-downgrades', f"{package.name}={package.version}"],
            privileged=True
        )
        if result.returncode != 0:
            error_msg = result.stderr if result.stderr else result.stdout
            raise InstallError(f"Failed to install {package}: {error_msg.strip()}", package.id)
        return Applied(package=package, files=self._installed_files(package.name))

    def revert(self, applied: Applied):
        package = applied.package
        result = self._run_command(['apt-get', 'remove', '-y', package.name], privileged=True)
        if result.returncode != 0:
            raise RevertError(f"Failed to revert {package}: {result.stderr.strip()}", package.id)

    def remove(self, package: Package):
        if not validate_package_name(package.name):
            raise RemoveError(f"Invalid package name: {package.name}", package.id)
        if not self._is_installed(package.name):
            return
        result = self._run_command(['apt-get', 'remove', '-y', package.name], privileged=True)
        if result.returncode != 0:
            error_msg = result.stderr if result.stderr else result.stdout
            raise RemoveError(f"Failed to remove {package.id}: {error_msg.strip()}", package.id)
