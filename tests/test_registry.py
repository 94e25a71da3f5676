import pytest

from ifexhub.registry import (
    MethodInfo,
    NamespaceInfo,
    ServiceFilter,
    ServiceInfo,
    ServiceNotFound,
    ServiceRegistration,
    ServiceRegistry,
    ServiceStatus,
    TransportType,
    check_extension_path,
    matches_filter,
)

SCHEMA = """
name: climate
namespaces:
  - name: climate
    methods:
      - name: set_temperature
        description: Set cabin temperature
        x-scheduling:
          enabled: true
      - name: get_temperature
        description: Read cabin temperature
"""

ROOT_SCHEMA = """
name: lights
x-scheduling:
  enabled: true
"""


def _info(name="climate", **kwargs):
    kwargs.setdefault("address", "localhost:5000")
    return ServiceInfo(name=name, **kwargs)


@pytest.fixture
def registry():
    return ServiceRegistry()


def test_registration_ids_are_sequential(registry):
    first = registry.register_service(_info())
    second = registry.register_service(_info("other"))
    assert first == "reg_1"
    assert second == "reg_2"


def test_get_service_returns_registered_data(registry):
    registry.register_service(_info(version="1.2.0", description="Climate control"))
    info = registry.get_service("climate")
    assert info.name == "climate"
    assert info.version == "1.2.0"
    assert info.description == "Climate control"
    assert info.address == "localhost:5000"
    assert info.last_heartbeat > 0


def test_get_unknown_service_raises(registry):
    with pytest.raises(ServiceNotFound, match="Service not found: missing"):
        registry.get_service("missing")


def test_get_service_skips_unavailable(registry):
    registry.register_service(_info(address="a:1", status=ServiceStatus.UNAVAILABLE))
    registry.register_service(_info(address="b:2", status=ServiceStatus.STARTING))
    assert registry.get_service("climate").address == "b:2"


def test_unregister_removes_service(registry):
    reg_id = registry.register_service(_info())
    registry.unregister_service(reg_id)
    with pytest.raises(ServiceNotFound):
        registry.get_service("climate")
    assert registry.query_services() == []


def test_unregister_unknown_raises(registry):
    with pytest.raises(ServiceNotFound, match="Registration ID not found"):
        registry.unregister_service("reg_99")


def test_heartbeat_updates_status(registry):
    reg_id = registry.register_service(_info())
    registry.heartbeat(reg_id, ServiceStatus.UNAVAILABLE)
    with pytest.raises(ServiceNotFound):
        registry.get_service("climate")
    registry.heartbeat(reg_id, ServiceStatus.AVAILABLE)
    assert registry.get_service("climate").status == ServiceStatus.AVAILABLE


def test_heartbeat_unknown_raises(registry):
    with pytest.raises(ServiceNotFound):
        registry.heartbeat("reg_7", ServiceStatus.AVAILABLE)


def test_namespaces_parsed_from_schema(registry):
    registry.register_service(_info(ifex_schema=SCHEMA))
    info = registry.get_service("climate")
    assert [ns.name for ns in info.namespaces] == ["climate"]
    assert info.namespaces[0].description == "climate namespace"
    assert [m.name for m in info.methods] == ["set_temperature", "get_temperature"]
    assert info.methods[0].description == "Set cabin temperature"


def test_given_namespaces_win_over_schema(registry):
    given = [NamespaceInfo("custom", "", [MethodInfo("ping")])]
    registry.register_service(_info(namespaces=given, ifex_schema=SCHEMA))
    assert [m.name for m in registry.get_service("climate").methods] == ["ping"]


def test_unnamed_namespace_becomes_default(registry):
    schema = "namespaces:\n  - methods:\n      - name: ping\n"
    registry.register_service(_info(ifex_schema=schema))
    assert registry.get_service("climate").namespaces[0].name == "default"


def test_bad_schema_is_tolerated(registry):
    registry.register_service(_info(ifex_schema="key: [unclosed"))
    assert registry.get_service("climate").namespaces == []


def test_transport_reporting(registry):
    registry.register_service(_info(transport=TransportType.DBUS))
    assert registry.get_service("climate").transport == TransportType.DBUS
    assert registry.query_services()[0].transport == TransportType.GRPC


def test_query_by_name_pattern(registry):
    registry.register_service(_info("climate-control"))
    registry.register_service(_info("lights"))
    names = [s.name for s in registry.query_services(ServiceFilter(name_pattern="climate"))]
    assert names == ["climate-control"]


def test_query_by_method(registry):
    registry.register_service(_info(ifex_schema=SCHEMA))
    registry.register_service(_info("lights"))
    found = registry.query_services(ServiceFilter(has_method="get_temperature"))
    assert [s.name for s in found] == ["climate"]


def test_query_available_only(registry):
    registry.register_service(_info("up"))
    registry.register_service(_info("down", status=ServiceStatus.UNAVAILABLE))
    found = registry.query_services(ServiceFilter(available_only=True))
    assert [s.name for s in found] == ["up"]
    assert len(registry.query_services()) == 2


def test_matches_filter_transport():
    dbus = ServiceRegistration("reg_1", "svc", transport=TransportType.DBUS)
    mqtt = ServiceRegistration("reg_2", "svc", transport=TransportType.MQTT)
    assert matches_filter(dbus, ServiceFilter(transport_type=TransportType.DBUS))
    assert not matches_filter(dbus, ServiceFilter(transport_type=TransportType.HTTP_REST))
    assert not matches_filter(mqtt, ServiceFilter(transport_type=TransportType.MQTT))
    assert matches_filter(mqtt, ServiceFilter())


def test_matches_filter_extension_paths():
    registration = ServiceRegistration("reg_1", "lights", ifex_schema=ROOT_SCHEMA)
    assert matches_filter(registration, ServiceFilter(extension_paths=("x-scheduling.enabled=true",)))
    assert not matches_filter(registration, ServiceFilter(extension_paths=("x-other",)))


def test_is_available():
    assert ServiceRegistration("r", "n", status=ServiceStatus.STARTING).is_available()
    assert not ServiceRegistration("r", "n", status=ServiceStatus.STOPPING).is_available()


def test_extension_path_existence():
    assert check_extension_path(ROOT_SCHEMA, "x-scheduling.enabled")
    assert check_extension_path(ROOT_SCHEMA, "x-scheduling")
    assert not check_extension_path(ROOT_SCHEMA, "x-scheduling.missing")


def test_extension_path_value_at_root():
    assert check_extension_path(ROOT_SCHEMA, "x-scheduling.enabled=true")
    assert not check_extension_path(ROOT_SCHEMA, "x-scheduling.enabled=false")


def test_extension_path_value_in_methods():
    assert check_extension_path(SCHEMA, "x-scheduling.enabled=true")
    assert not check_extension_path(SCHEMA, "x-missing.enabled=true")


def test_extension_path_non_scalar_value_is_false():
    assert not check_extension_path(ROOT_SCHEMA, "x-scheduling=true")


def test_extension_path_invalid_yaml_is_false():
    assert not check_extension_path("key: [unclosed", "key")