import re
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from upm.adapters.base import BackendAdapter
from upm.errors import (AdapterError, AdapterTimeout, InstallError, NotFound, RemoveError, RevertError,
                        UnpackError)
from upm.models import (Applied, Capability, DependencyEdge, Package, Repository, StagedContents)

DEFAULT_REMOTE = "flathub"

_SIZE_RE = re.compile(r'([\d.,]+)\s*([kKMGT]?B)')
_SIZE_UNITS = {'B': 1, 'kB': 1000, 'KB': 1000, 'MB': 1000 ** 2, 'GB': 1000 ** 3, 'TB': 1000 ** 4}


def validate_flatpak_id(flatpak_id: str) -> bool:
    """
    Validate Flatpak app ID to prevent command injection

    Flatpak IDs use reverse DNS notation: org.example.AppName
    """
    if not flatpak_id or len(flatpak_id) > 255:
        return False

    # Flatpak ID pattern: reverse DNS notation
    pattern = r'^[a-zA-Z0-9_-]+(\.[a-zA-Z0-9_-]+)+$'
    return bool(re.match(pattern, flatpak_id))


def parse_size(text: str) -> Optional[int]:
    """Convert '95.1 MB' style sizes to bytes"""
    match = _SIZE_RE.search(text or '')
    if not match:
        return None
    return int(float(match.group(1).replace(',', '')) * _SIZE_UNITS.get(match.group(2), 1))


class FlatpakAdapter(BackendAdapter):
    """Adapter for Flatpak using CLI"""

    backend_id = "flatpak"
    capabilities = frozenset({
        Capability.RESOLVE_METADATA,
        Capability.INSTALL_FILES,
        Capability.REMOVE_FILES,
    })

    def __init__(self, system_wide: bool = False, timeout: int = 600):
        self.system_wide = system_wide
        self.timeout = timeout
        self._runtimes: Dict[Tuple[str, str], Optional[str]] = {}

    def is_available(self) -> bool:
        """Check if Flatpak is available on the system"""
        return shutil.which('flatpak') is not None

    def _run_command(self, args: List[str], mutating: bool = False,
                     timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        """
        Run a flatpak command

        Mutating commands run through pkexec for system-wide installs and
        with --user otherwise.
        """
        if mutating and self.system_wide:
            cmd = ['pkexec', 'flatpak'] + args
        elif mutating:
            cmd = ['flatpak', args[0], '--user'] + args[1:]
        else:
            cmd = ['flatpak'] + args
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
            raise AdapterError(f"Failed to run flatpak: {e}") from e

    @staticmethod
    def _parse_info(output: str) -> Dict[str, str]:
        """Parse 'Key: value' lines of flatpak info/remote-info output"""
        info = {}
        for line in output.strip().split('\n'):
            line = line.strip()
            if not line:
                continue
            if ':' in line and ' - ' not in line.split(':', 1)[0]:
                key, value = line.split(':', 1)
                info[key.strip().lower().replace(' ', '_')] = value.strip()
            elif 'title' not in info:
                title, _, summary = line.partition(' - ')
                info['title'] = title.strip()
                info['summary'] = summary.strip()
        return info

    def fetch_metadata(self, repository: Optional[Repository], name: str) -> Package:
        if not validate_flatpak_id(name):
            raise NotFound(f"flatpak '{name}' (invalid id)")
        remote = repository.name if repository else DEFAULT_REMOTE
        result = self._run_command(['remote-info', remote, name], timeout=30)
        if result.returncode != 0:
            raise NotFound(self.package_id(name))

        info = self._parse_info(result.stdout)
        version = info.get('version') or info.get('branch') or 'unknown'
        runtime = info.get('runtime', '').split('/')[0] or None
        self._runtimes[(self.package_id(name), version)] = runtime
        return Package(
            id=self.package_id(name),
            name=name,
            version=version,
            description=info.get('summary', ''),
            repository=remote,
            license=info.get('license'),
            size_bytes=parse_size(info.get('download', '')),
        )

    def list_packages(self, repository: Repository) -> List[Package]:
        result = self._run_command(
            ['remote-ls', '--app', '--columns=application,version,branch,runtime,download-size,description',
             repository.name],
            timeout=120
        )
        if result.returncode != 0:
            raise AdapterError(f"flatpak remote-ls {repository.name} failed: {result.stderr.strip()}")

        packages = []
        for line in result.stdout.strip().split('\n'):
            parts = line.split('\t')
            if len(parts) < 3 or not validate_flatpak_id(parts[0].strip()):
                continue
            app_id = parts[0].strip()
            version = parts[1].strip() or parts[2].strip()
            runtime = parts[3].strip().split('/')[0] if len(parts) > 3 else ''
            self._runtimes[(self.package_id(app_id), version)] = runtime or None
            packages.append(Package(
                id=self.package_id(app_id),
                name=app_id,
                version=version,
                description=parts[5].strip() if len(parts) > 5 else '',
                repository=repository.name,
                size_bytes=parse_size(parts[4]) if len(parts) > 4 else None,
            ))
        return packages

    def list_dependencies(self, package: Package) -> List[DependencyEdge]:
        if package.key not in self._runtimes:
            try:
                self.fetch_metadata(None, package.name)
            except NotFound:
                return []
        runtime = self._runtimes.get(package.key)
        if not runtime or runtime == package.name:
            return []
        return [DependencyEdge(package.id, self.package_id(runtime))]

    def search(self, query: str) -> List[Package]:
        """Search Flatpak remotes"""
        if not query.strip():
            return []
        result = self._run_command(
            ['search', '--columns=application,version,branch,remotes,description', query], timeout=30
        )
        if result.returncode != 0:
            return []

        packages = []
        for line in result.stdout.strip().split('\n'):
            parts = line.split('\t')
            if len(parts) < 2 or not validate_flatpak_id(parts[0].strip()):
                continue
            packages.append(Package(
                id=self.package_id(parts[0].strip()),
                name=parts[0].strip(),
                version=parts[1].strip() or (parts[2].strip() if len(parts) > 2 else 'unknown'),
                repository=parts[3].strip().split(',')[0] if len(parts) > 3 else None,
                description=parts[4].strip() if len(parts) > 4 else '',
            ))
        return packages[:100]

    def _is_installed(self, app_id: str) -> bool:
        return self._run_command(['info', app_id], timeout=15).returncode == 0

    def stage(self, package: Package, artifact: Optional[Path]) -> StagedContents:
        # flatpak pulls and deploys the ref itself during apply()
        if not validate_flatpak_id(package.name):
            raise UnpackError(f"Invalid Flatpak ID: {package.name}", package.id)
        return StagedContents(package=package, artifact=artifact)

    def apply(self, staged: StagedContents) -> Applied:
        package = staged.package
        remote = package.repository or DEFAULT_REMOTE
        result = self._run_command(['install', '-y', '--noninteractive', remote, package.name], mutating=True)
        if result.returncode != 0:
            error_msg = result.stderr if result.stderr else result.stdout
            raise InstallError(f"Failed to install {package}: {error_msg.strip()}", package.id)
        return Applied(package=package)

    def revert(self, applied: Applied):
        package = applied.package
        result = self._run_command(['uninstall', '-y', '--noninteractive', package.name], mutating=True)
        if result.returncode != 0:
            raise RevertError(f"Failed to revert {package}: {result.stderr.strip()}", package.id)

    def remove(self, package: Package):
        if not validate_flatpak_id(package.name):
            raise RemoveError(f"Invalid Flatpak ID: {package.name}", package.id)
        if not self._is_installed(package.name):
            return
        result = self._run_command(['uninstall', '-y', '--noninteractive', package.name], mutating=True)
        if result.returncode != 0:
            error_msg = result.stderr if result.stderr else result.stdout
            raise RemoveError(f"Failed to uninstall {package.id}: {error_msg.strip()}", package.id)
