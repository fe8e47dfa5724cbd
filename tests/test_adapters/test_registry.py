from unittest.mock import patch

import pytest

from upm.adapters.registry import AdapterRegistry
from upm.errors import NotFound
from upm.versions import SemanticComparator


class TestAdapterRegistry:

    @pytest.mark.unit
    def test_register_and_get(self, fake, other):
        registry = AdapterRegistry([other, fake])

        assert registry.get("fake") is fake
        assert "other" in registry
        assert len(registry) == 2
        # Iteration is sorted by backend id
        assert [adapter.backend_id for adapter in registry] == ["fake", "other"]

    @pytest.mark.unit
    def test_duplicate_backend_rejected(self, fake):
        registry = AdapterRegistry([fake])
        with pytest.raises(ValueError, match="already registered"):
            registry.register(type(fake)("fake"))

    @pytest.mark.unit
    def test_empty_backend_id_rejected(self, fake):
        with pytest.raises(ValueError):
            AdapterRegistry([type(fake)("")])

    @pytest.mark.unit
    def test_unknown_backend(self, fake):
        registry = AdapterRegistry([fake])
        with pytest.raises(NotFound):
            registry.get("ghost")
        with pytest.raises(NotFound):
            registry.for_package("ghost:thing")

    @pytest.mark.unit
    def test_for_package(self, fake, other):
        registry = AdapterRegistry([fake, other])
        assert registry.for_package("other:lib") is other

    @pytest.mark.unit
    def test_comparator_for_unregistered_backend(self):
        assert isinstance(AdapterRegistry().comparator_for("tar"), SemanticComparator)

    @pytest.mark.unit
    def test_available(self, fake, other):
        registry = AdapterRegistry([fake, other])
        with patch.object(other, 'is_available', return_value=False):
            assert registry.available() == [fake]
