"""
Test suite for apt_adapter.py
Tests name validation, control-file parsing and the apt/dpkg command flow
"""

import subprocess
from unittest.mock import Mock, patch

import pytest

from upm.adapters.apt_adapter import AptAdapter, parse_control_stanzas, parse_relations, validate_package_name
from upm.errors import AdapterTimeout, InstallError, NotFound, RemoveError, RevertError, UnpackError
from upm.models import Applied, DependencyEdge, Package, Repository, StagedContents

SHOW_OUTPUT = """Package: curl
Version: 7.81.0-1ubuntu1.15
Section: web
Size: 194434
Depends: libc6 (>= 2.34), libcurl4 (= 7.81.0-1ubuntu1.15), zlib1g (>= 1:1.1.4)
Recommends: ca-certificates
Description: command line tool for transferring data with URL syntax
 curl is a command line tool for transferring data with URL syntax.

Package: curl
Version: 7.81.0-1
Section: web
Depends: libc6 (>= 2.34)
Description: command line tool for transferring data with URL syntax

"""


def _result(stdout="", returncode=0, stderr=""):
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


def _package(name="curl", version="7.81.0-1ubuntu1.15"):
    return Package(id=f"apt:{name}", name=name, version=version)


class TestValidation:

    @pytest.mark.security
    def test_package_name_validation(self):
        """Package name validation prevents command injection"""
        assert validate_package_name("firefox")
        assert validate_package_name("libc6")
        assert validate_package_name("python3.10")
        assert validate_package_name("lib-test+dev")

        assert not validate_package_name("test; rm -rf /")
        assert not validate_package_name("test && cat /etc/passwd")
        assert not validate_package_name("$(whoami)")
        assert not validate_package_name("`id`")
        assert not validate_package_name("test\nrm -rf /")
        assert not validate_package_name("Firefox")
        assert not validate_package_name("test/package")
        assert not validate_package_name("-test")
        assert not validate_package_name("")
        assert not validate_package_name("a" * 201)

    @pytest.mark.security
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_invalid_names_never_reach_subprocess(self, mock_run):
        adapter = AptAdapter()
        evil = _package("evil`whoami`")

        with pytest.raises(NotFound):
            adapter.fetch_metadata(None, "evil; rm -rf /")
        with pytest.raises(UnpackError):
            adapter.stage(evil, None)
        with pytest.raises(RemoveError):
            adapter.remove(evil)
        mock_run.assert_not_called()


class TestParsing:

    @pytest.mark.unit
    def test_control_stanzas(self):
        stanzas = parse_control_stanzas(SHOW_OUTPUT)

        assert len(stanzas) == 2
        assert stanzas[0]['Version'] == "7.81.0-1ubuntu1.15"
        assert stanzas[0]['Description'].startswith("command line tool")
        assert "\ncurl is a command line tool" in stanzas[0]['Description']

    @pytest.mark.unit
    def test_relations(self):
        relations = parse_relations("libc6 (>= 2.34), default-mta | mail-transport-agent, python3:any (>> 3.8)")
        assert relations == [("libc6", ">=2.34"), ("default-mta", None), ("python3", ">>3.8")]
        assert parse_relations("") == []


class TestMetadata:

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_fetch_metadata_picks_newest(self, mock_run):
        mock_run.return_value = _result(SHOW_OUTPUT)
        adapter = AptAdapter()

        package = adapter.fetch_metadata(Repository("apt", "http://archive", "archive"), "curl")

        assert package.id == "apt:curl"
        assert package.version == "7.81.0-1ubuntu1.15"
        assert package.size_bytes == 194434
        assert package.repository == "archive"
        assert package.description == "command line tool for transferring data with URL syntax"
        assert mock_run.call_args[0][0] == ['apt-cache', 'show', 'curl']

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_fetch_metadata_unknown(self, mock_run):
        mock_run.return_value = _result("", returncode=100, stderr="E: No packages found")
        with pytest.raises(NotFound):
            AptAdapter().fetch_metadata(None, "nonexistent")

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_list_dependencies(self, mock_run):
        mock_run.return_value = _result(SHOW_OUTPUT)

        edges = AptAdapter().list_dependencies(_package())

        assert edges == [
            DependencyEdge("apt:curl", "apt:libc6", ">=2.34"),
            DependencyEdge("apt:curl", "apt:libcurl4", "=7.81.0-1ubuntu1.15"),
            DependencyEdge("apt:curl", "apt:zlib1g", ">=1:1.1.4"),
            DependencyEdge("apt:curl", "apt:ca-certificates", None, True),
        ]
        assert mock_run.call_args[0][0] == ['apt-cache', 'show', 'curl=7.81.0-1ubuntu1.15']

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_list_packages(self, mock_run):
        mock_run.return_value = _result(SHOW_OUTPUT)

        packages = AptAdapter().list_packages(Repository("apt", "http://archive", "archive"))

        assert [p.version for p in packages] == ["7.81.0-1ubuntu1.15", "7.81.0-1"]
        assert mock_run.call_args[0][0] == ['apt-cache', 'dumpavail']

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_search(self, mock_run):
        mock_run.return_value = _result(SHOW_OUTPUT)

        results = AptAdapter().search("curl")

        assert {p.id for p in results} == {"apt:curl"}
        assert AptAdapter().search("   ") == []

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.shutil.which')
    def test_availability(self, mock_which):
        mock_which.return_value = None
        assert AptAdapter().is_available() is False
        mock_which.return_value = "/usr/bin/apt-get"
        assert AptAdapter().is_available() is True


class TestMutations:

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_apply_pins_version_with_privilege(self, mock_run):
        mock_run.side_effect = [_result(), _result("/.\n/usr/bin/curl\n/usr/share/doc/curl\n")]
        adapter = AptAdapter()
        package = _package()

        applied = adapter.apply(adapter.stage(package, None))

        install_cmd = mock_run.call_args_list[0][0][0]
        assert install_cmd[0] == 'pkexec'
        assert install_cmd[-1] == "curl=7.81.0-1ubuntu1.15"
        assert [f.path for f in applied.files] == ["/.", "/usr/bin/curl", "/usr/share/doc/curl"]

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_apply_failure(self, mock_run):
        mock_run.return_value = _result(returncode=100, stderr="E: Unable to locate package")

        with pytest.raises(InstallError, match="Unable to locate package"):
            AptAdapter().apply(StagedContents(package=_package()))

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_revert(self, mock_run):
        mock_run.return_value = _result()
        AptAdapter(privileged_prefix=()).revert(Applied(package=_package()))
        assert mock_run.call_args[0][0] == ['apt-get', 'remove', '-y', 'curl']

        mock_run.return_value = _result(returncode=1, stderr="dpkg was interrupted")
        with pytest.raises(RevertError):
            AptAdapter().revert(Applied(package=_package()))

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_remove_absent_package_is_noop(self, mock_run):
        mock_run.return_value = _result(returncode=1, stderr="dpkg-query: no packages found")

        AptAdapter().remove(_package())

        assert mock_run.call_count == 1
        assert mock_run.call_args[0][0][0] == 'dpkg-query'

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_remove_installed_package(self, mock_run):
        mock_run.side_effect = [_result("install ok installed"), _result(returncode=1, stderr="locked")]

        with pytest.raises(RemoveError, match="locked"):
            AptAdapter().remove(_package())

    @pytest.mark.unit
    @patch('upm.adapters.apt_adapter.subprocess.run')
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="apt-cache", timeout=30)

        with pytest.raises(AdapterTimeout):
            AptAdapter().fetch_metadata(None, "curl")
