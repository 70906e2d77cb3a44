"""
Connector registry tests
"""
import pytest

from core.exceptions import ConflictError, NotFoundError
from services.connectors import ConnectionDirection, ConnectorRegistry, has_method, missing_required_options
from services.connectors.base import ConnectionOption
from fixtures.connectors import FakeApp, FakeExport, FakeImport, FakeSingleExport, build_registry


class TestConnectorRegistry:

    def test_lookup_by_name(self):
        registry = build_registry()
        assert registry.get_app("fake").name == "fake"
        assert registry.get_connection("fake-export").direction == ConnectionDirection.EXPORT

    def test_unknown_names_raise_not_found(self):
        registry = build_registry()
        with pytest.raises(NotFoundError, match="cannot find connection nope"):
            registry.get_connection("nope")
        with pytest.raises(NotFoundError, match="cannot find app type nope"):
            registry.get_app("nope")

    def test_connection_requires_registered_app(self):
        registry = ConnectorRegistry()
        with pytest.raises(NotFoundError):
            registry.register_connection(FakeImport())

    def test_duplicate_registration_conflicts(self):
        registry = ConnectorRegistry()
        registry.register_app(FakeApp())
        with pytest.raises(ConflictError):
            registry.register_app(FakeApp())

    def test_frozen_registry_rejects_registration(self):
        registry = build_registry()
        assert registry.frozen
        with pytest.raises(RuntimeError, match="frozen"):
            registry.register_connection(FakeExport())

    def test_connections_for_app_filters_direction(self):
        registry = build_registry()
        names = {c.name for c in registry.connections_for_app("fake", ConnectionDirection.IMPORT)}
        assert names == {"fake-import", "fake-batch-import"}


class TestCapabilities:

    def test_has_method_checks_capability_not_type(self):
        assert has_method(FakeExport(), "export_profiles")
        assert not has_method(FakeSingleExport(), "export_profiles")
        assert has_method(FakeSingleExport(), "export_profile")

    def test_missing_required_options(self):
        declared = [ConnectionOption("table", required=True), ConnectionOption("schema")]
        assert missing_required_options(declared, {"table": ""}) == ["table"]
        assert missing_required_options(declared, {"table": "users"}) == []
