import re
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from upm.adapters.base import BackendAdapter
from upm.adapters.flatpak_adapter import parse_size
from upm.errors import (AdapterError, AdapterTimeout, InstallError, NotFound, RemoveError, RevertError,
                        UnpackError)
from upm.models import (Applied, Capability, DependencyEdge, Package, Repository, StagedContents)

DEFAULT_CHANNEL = "latest/stable"


def validate_snap_name(snap_name: str) -> bool:
    """
    Validate snap name to prevent command injection

    Snap names can contain lowercase letters, numbers, and hyphens
    """
    if not snap_name or len(snap_name) > 200:
        return False

    # Snap naming rules
    pattern = r'^[a-z0-9][a-z0-9-]*$'
    return bool(re.match(pattern, snap_name))


def parse_snap_info(output: str) -> Dict:
    """
    Parse `snap info` output

    Returns:
        Top-level fields plus a 'channels' mapping of channel -> (version, size)
    """
    info: Dict = {'channels': {}}
    section = None
    for line in output.split('\n'):
        if not line.strip():
            continue
        if line[0] not in ' \t':
            key, _, value = line.partition(':')
            key = key.strip().lower()
            info[key] = value.strip()
            section = key
        elif section == 'channels':
            channel, _, rest = line.strip().partition(':')
            parts = rest.split()
            if parts and parts[0] not in ('↑', '--'):
                size = next((p for p in parts if re.match(r'^[\d.]+[kMG]?B$', p)), '')
                info['channels'][channel.strip()] = (parts[0], parse_size(size))
    return info


class SnapAdapter(BackendAdapter):
    """Adapter for Snap package manager using CLI"""

    backend_id = "snap"
    capabilities = frozenset({
        Capability.RESOLVE_METADATA,
        Capability.INSTALL_FILES,
        Capability.REMOVE_FILES,
    })

    def __init__(self, channel: str = DEFAULT_CHANNEL, allow_classic: bool = False, timeout: int = 600):
        self.channel = channel
        self.allow_classic = allow_classic
        self.timeout = timeout

    def is_available(self) -> bool:
        """Check if snap command is available and snapd is running"""
        if shutil.which('snap') is None:
            return False
        try:
            return self._run_command(['version'], timeout=5).returncode == 0
        except AdapterError:
            return False

    def _run_command(self, args: List[str], privileged: bool = False,
                     timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        """Run a snap command"""
        cmd = (['pkexec', 'snap'] if privileged else ['snap']) + args
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
            raise AdapterError(f"Failed to run snap: {e}") from e

    def fetch_metadata(self, repository: Optional[Repository], name: str) -> Package:
        if not validate_snap_name(name):
            raise NotFound(f"snap '{name}' (invalid name)")
        result = self._run_command(['info', name], timeout=15)
        if result.returncode != 0:
            raise NotFound(self.package_id(name))

        info = parse_snap_info(result.stdout)
        channel = repository.name if repository and repository.name in info['channels'] else self.channel
        version, size = info['channels'].get(channel, (info.get('installed', '').split(' ')[0] or None, None))
        if not version:
            raise NotFound(f"{self.package_id(name)} in channel {channel}")
        return Package(
            id=self.package_id(name),
            name=name,
            version=version,
            description=info.get('summary', ''),
            repository=channel,
            license=info.get('license'),
            size_bytes=size,
        )

    def list_dependencies(self, package: Package) -> List[DependencyEdge]:
        # Snaps bundle their dependencies
        return []

    def search(self, query: str) -> List[Package]:
        """Search for packages in Snap Store"""
        if not query.strip():
            return []
        result = self._run_command(['find', query], timeout=30)
        if result.returncode != 0:
            return []

        packages = []
        lines = result.stdout.strip().split('\n')

        # Skip header line
        if lines and 'Name' in lines[0]:
            lines = lines[1:]

        for line in lines:
            # Format: Name  Version  Publisher  Notes  Summary
            parts = re.split(r'\s{2,}', line.strip())
            if len(parts) >= 2 and validate_snap_name(parts[0]):
                packages.append(Package(
                    id=self.package_id(parts[0]),
                    name=parts[0],
                    version=parts[1],
                    description=parts[-1] if len(parts) > 4 else '',
                    repository=self.channel,
                ))
        return packages[:100]

    def _is_installed(self, name: str) -> bool:
        return self._run_command(['list', name], timeout=15).returncode == 0

    def stage(self, package: Package, artifact: Optional[Path]) -> StagedContents:
        # snapd downloads and mounts the snap during apply()
        if not validate_snap_name(package.name):
            raise UnpackError(f"Invalid snap name: {package.name}", package.id)
        return StagedContents(package=package, artifact=artifact)

    def apply(self, staged: StagedContents) -> Applied:
        package = staged.package
        channel = package.repository or self.channel
        cmd = ['install', package.name, f'--channel={channel}']
        result = self._run_command(cmd, privileged=True)

        if result.returncode != 0:
            error_msg = result.stderr if result.stderr else result.stdout
            if 'requires classic confinement' in error_msg.lower():
                if not self.allow_classic:
                    raise InstallError(f"{package.name} requires classic confinement, which is not allowed",
                                       package.id)
                result = self._run_command(cmd + ['--classic'], privileged=True)
                error_msg = result.stderr if result.stderr else result.stdout
            if result.returncode != 0:
                raise InstallError(f"Failed to install {package}: {error_msg.strip()}", package.id)
        return Applied(package=package)

    def revert(self, applied: Applied):
        package = applied.package
        result = self._run_command(['remove', package.name], privileged=True)
        if result.returncode != 0:
            raise RevertError(f"Failed to revert {package}: {result.stderr.strip()}", package.id)

    def remove(self, package: Package):
        if not validate_snap_name(package.name):
            raise RemoveError(f"Invalid snap name: {package.name}", package.id)
        if not self._is_installed(package.name):
            return
        result = self._run_command(['remove', package.name], privileged=True)
        if result.returncode != 0:
            error_msg = result.stderr if result.stderr else result.stdout
            raise RemoveError(f"Failed to remove {package.id}: {error_msg.strip()}", package.id)
