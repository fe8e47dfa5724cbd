import pytest

from upm.errors import InvalidTransition
from upm.models import (DependencyEdge, Operation, OperationStatus, OperationType, Package, PackageAction,
                        Plan, PlanStep, Repository, format_size, make_package_id, merge_edges,
                        parse_package_request, split_package_id)


def _package(name="hello", version="1.0", size=None):
    return Package(id=make_package_id("tar", name), name=name, version=version, size_bytes=size)


def test_package_creation():
    """Test creating a Package"""
    pkg = _package()

    assert pkg.id == "tar:hello"
    assert pkg.backend_id == "tar"
    assert pkg.key == ("tar:hello", "1.0")
    assert str(pkg) == "tar:hello@1.0"
    assert pkg.installed is False
    assert pkg.installed_version is None


def test_split_package_id():
    """Test splitting backend-qualified ids"""
    assert split_package_id("apt:libc6") == ("apt", "libc6")
    assert split_package_id("flatpak:org.gnome.Gimp") == ("flatpak", "org.gnome.Gimp")

    for bad in ("hello", ":hello", "apt:"):
        with pytest.raises(ValueError):
            split_package_id(bad)


def test_format_size():
    """Test human-readable sizes"""
    assert format_size(None) == "0 B"
    assert format_size(512) == "512 B"
    assert format_size(2048) == "2.0 KB"
    assert format_size(5 * 1024 * 1024) == "5.0 MB"


def test_repository_name_defaults_to_url():
    repo = Repository(backend_id="tar", url="/srv/index.json")
    assert repo.name == "/srv/index.json"
    assert repo.priority == 500
    assert repo.enabled is True


class TestMergeEdges:

    @pytest.mark.unit
    def test_duplicate_requirements_are_conjoined(self):
        edges = merge_edges([
            DependencyEdge("tar:a", "tar:b", ">=1.0"),
            DependencyEdge("tar:a", "tar:b", "<2.0"),
            DependencyEdge("tar:a", "tar:c"),
        ])

        assert len(edges) == 2
        assert edges[0] == DependencyEdge("tar:a", "tar:b", ">=1.0, <2.0", False)

    @pytest.mark.unit
    def test_optional_only_if_all_optional(self):
        edges = merge_edges([
            DependencyEdge("tar:a", "tar:b", None, True),
            DependencyEdge("tar:a", "tar:b", None, False),
        ])
        assert edges == [DependencyEdge("tar:a", "tar:b", None, False)]


class TestOperationLifecycle:

    @pytest.mark.unit
    def test_allowed_transitions(self):
        op = Operation(id="op-1", operation_type=OperationType.INSTALL, packages=["tar:hello"])
        assert op.status == OperationStatus.PENDING

        op.transition(OperationStatus.RUNNING)
        op.transition(OperationStatus.FAILED)
        op.transition(OperationStatus.ROLLED_BACK)
        assert op.status == OperationStatus.ROLLED_BACK
        assert op.status.is_terminal

    @pytest.mark.unit
    def test_cancel_goes_straight_to_rolled_back(self):
        op = Operation(id="op-1", operation_type=OperationType.INSTALL, packages=[])
        op.transition(OperationStatus.RUNNING)
        op.transition(OperationStatus.ROLLED_BACK)

    @pytest.mark.unit
    def test_pending_can_fail_without_running(self):
        op = Operation(id="op-1", operation_type=OperationType.UNINSTALL, packages=[])
        op.transition(OperationStatus.FAILED)
        assert op.status == OperationStatus.FAILED

    @pytest.mark.unit
    @pytest.mark.parametrize("path", [
        [OperationStatus.COMPLETED],
        [OperationStatus.RUNNING, OperationStatus.COMPLETED, OperationStatus.RUNNING],
        [OperationStatus.RUNNING, OperationStatus.ROLLED_BACK, OperationStatus.FAILED],
        [OperationStatus.RUNNING, OperationStatus.PENDING],
    ])
    def test_invalid_transitions(self, path):
        op = Operation(id="op-1", operation_type=OperationType.UPDATE, packages=[])
        with pytest.raises(InvalidTransition):
            for status in path:
                op.transition(status)


class TestPlan:

    @pytest.mark.unit
    def test_describe(self):
        old = _package(version="1.0")
        old.installed_version = "1.0"
        plan = Plan(OperationType.INSTALL, [
            PlanStep(_package("lib", "2.0", size=2048), PackageAction.INSTALL),
            PlanStep(_package("hello", "2.0", size=1024), PackageAction.UPGRADE, previous=old),
            PlanStep(_package("junk", "0.1", size=4096), PackageAction.REMOVE),
        ])

        assert plan.package_ids == ["tar:lib", "tar:hello", "tar:junk"]
        assert plan.total_download_size == 3072
        text = plan.describe()
        assert "install tar:lib@2.0" in text
        assert "upgrade tar:hello 1.0 -> 2.0" in text
        assert "remove tar:junk@0.1" in text
        assert "Download size: 3.0 KB" in text

    @pytest.mark.unit
    def test_empty_plan(self):
        plan = Plan(OperationType.UPDATE)
        assert plan.is_empty
        assert plan.describe() == "Nothing to do."


class TestParsePackageRequest:

    @pytest.mark.unit
    @pytest.mark.parametrize("text,backend,name,constraint", [
        ("hello", None, "hello", None),
        ("tar:hello", "tar", "hello", None),
        ("hello>=1.0", None, "hello", ">=1.0"),
        ("apt:libc6 >= 2.31", "apt", "libc6", ">= 2.31"),
        ("hello@2.0", None, "hello", "=2.0"),
        ("flatpak:org.gnome.Gimp", "flatpak", "org.gnome.Gimp", None),
        ("hello>=1.0,<2.0", None, "hello", ">=1.0,<2.0"),
    ])
    def test_valid_requests(self, text, backend, name, constraint):
        request = parse_package_request(text)
        assert (request.backend, request.name, request.constraint) == (backend, name, constraint)

    @pytest.mark.unit
    def test_request_string(self):
        assert str(parse_package_request("tar:hello>=1.0")) == "tar:hello>=1.0"
        assert parse_package_request("tar:hello").package_id == "tar:hello"
        assert parse_package_request("hello").package_id is None

    @pytest.mark.security
    @pytest.mark.parametrize("text", ["", "hello world", "a:b:c", "hello@"])
    def test_invalid_requests(self, text):
        with pytest.raises(ValueError):
            parse_package_request(text)
