"""In-memory registry of services known to the discovery service."""

from __future__ import annotations

import copy
import enum
import itertools
import logging
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field

import yaml

log = logging.getLogger(__name__)

_NULL_TAG = "tag:yaml.org,2002:null"


class TransportType(enum.IntEnum):
    """Transport a service endpoint is reachable over."""

    GRPC = 0
    HTTP_REST = 1
    DBUS = 2
    SOMEIP = 3
    MQTT = 4


class ServiceStatus(enum.IntEnum):
    """Lifecycle status reported by a service."""

    AVAILABLE = 0
    UNAVAILABLE = 1
    STARTING = 2
    STOPPING = 3
    ERROR = 4


@dataclass
class MethodInfo:
    """A method offered by a service namespace."""

    name: str
    description: str = ""


@dataclass
class NamespaceInfo:
    """A namespace of an IFEX interface with its methods."""

    name: str
    description: str = ""
    methods: list[MethodInfo] = field(default_factory=list)


@dataclass
class ServiceInfo:
    """Public description of a registered service."""

    name: str
    version: str = ""
    description: str = ""
    address: str = ""
    transport: TransportType = TransportType.GRPC
    status: ServiceStatus = ServiceStatus.AVAILABLE
    namespaces: list[NamespaceInfo] = field(default_factory=list)
    ifex_schema: str = ""
    last_heartbeat: int = 0  # milliseconds since the epoch

    @property
    def methods(self) -> list[MethodInfo]:
        """All methods across all namespaces."""
        return [method for ns in self.namespaces for method in ns.methods]


@dataclass(frozen=True)
class ServiceFilter:
    """Criteria for querying services; empty fields match everything."""

    name_pattern: str = ""
    has_method: str = ""
    transport_type: TransportType = TransportType.GRPC
    available_only: bool = False
    extension_paths: tuple[str, ...] = ()


@dataclass
class ServiceRegistration:
    """A stored registration entry."""

    registration_id: str
    name: str
    version: str = ""
    description: str = ""
    address: str = ""
    transport: TransportType = TransportType.GRPC
    status: ServiceStatus = ServiceStatus.AVAILABLE
    namespaces: list[NamespaceInfo] = field(default_factory=list)
    ifex_schema: str = ""
    last_heartbeat: float = field(default_factory=time.time)

    def is_available(self) -> bool:
        """Whether the service accepts new requests."""
        return self.status in (ServiceStatus.AVAILABLE, ServiceStatus.STARTING)


class ServiceNotFound(LookupError):
    """Raised when a service or registration is not known."""


# Transports each operation is able to report; anything else is shown as GRPC.
_GET_TRANSPORTS = frozenset({TransportType.GRPC, TransportType.HTTP_REST, TransportType.DBUS})
_QUERY_TRANSPORTS = frozenset({TransportType.GRPC, TransportType.HTTP_REST})
_FILTER_TRANSPORTS = frozenset({TransportType.HTTP_REST, TransportType.DBUS})


def _reported(transport: TransportType, known: frozenset[TransportType]) -> TransportType:
    return transport if transport in known else TransportType.GRPC


def _to_info(registration: ServiceRegistration, known: frozenset[TransportType]) -> ServiceInfo:
    return ServiceInfo(
        name=registration.name,
        version=registration.version,
        description=registration.description,
        address=registration.address,
        transport=_reported(registration.transport, known),
        status=registration.status,
        namespaces=copy.deepcopy(registration.namespaces),
        ifex_schema=registration.ifex_schema,
        last_heartbeat=int(registration.last_heartbeat * 1000),
    )


def _as_mapping(node: object) -> dict:
    if not isinstance(node, dict):
        raise ValueError("malformed IFEX schema")
    return node


def _namespaces_from_schema(schema: str) -> list[NamespaceInfo]:
    """Group the methods declared in an IFEX schema by namespace."""
    document = _as_mapping(yaml.safe_load(schema))
    grouped: dict[str, list[MethodInfo]] = {}
    for namespace in document.get("namespaces") or []:
        namespace = _as_mapping(namespace)
        ns_name = str(namespace.get("name") or "") or "default"
        for method in namespace.get("methods") or []:
            method = _as_mapping(method)
            if "name" not in method:
                continue
            grouped.setdefault(ns_name, []).append(
                MethodInfo(str(method["name"]), str(method.get("description") or ""))
            )
    return [
        NamespaceInfo(name, f"{name} namespace", methods) for name, methods in grouped.items()
    ]


def _child(node: yaml.Node | None, key: str) -> yaml.Node | None:
    if isinstance(node, yaml.MappingNode):
        for key_node, value_node in node.value:
            if isinstance(key_node, yaml.ScalarNode) and key_node.value == key:
                return value_node
    return None


def _elements(node: yaml.Node | None) -> list[yaml.Node]:
    return node.value if isinstance(node, yaml.SequenceNode) else []


def _method_children(namespaces: yaml.Node, key: str) -> Iterator[yaml.Node]:
    for namespace in _elements(namespaces):
        for method in _elements(_child(namespace, "methods")):
            found = _child(method, key)
            if found is not None:
                yield found


def _segments(path: str) -> list[str]:
    parts = path.split(".")
    if parts and parts[-1] == "":
        parts.pop()
    return parts


def check_extension_path(ifex_yaml: str, extension_path: str) -> bool:
    """Check a dotted path, optionally ``path=value``, against an IFEX document.

    Without a value only existence is checked. With a value, segments missing
    at the current level are also looked up in the methods of its namespaces.
    """
    try:
        root = yaml.compose(ifex_yaml)
    except yaml.YAMLError as exc:
        log.warning("Failed to check extension path: %s", exc)
        return False

    path, sep, expected = extension_path.partition("=")
    current = root
    if not sep:
        for segment in _segments(path):
            current = _child(current, segment)
            if current is None:
                return False
        return True

    for segment in _segments(path):
        child = _child(current, segment)
        if child is not None:
            current = child
            continue
        namespaces = _child(current, "namespaces")
        if namespaces is None:
            return False
        child = next(_method_children(namespaces, segment), None)
        if child is None:
            return False
        current = child

    if not isinstance(current, yaml.ScalarNode) or current.tag == _NULL_TAG:
        return False
    return current.value == expected


def matches_filter(registration: ServiceRegistration, service_filter: ServiceFilter) -> bool:
    """Whether a registration satisfies every criterion of a filter."""
    if service_filter.name_pattern and service_filter.name_pattern not in registration.name:
        return False

    if service_filter.has_method and not any(
        method.name == service_filter.has_method
        for ns in registration.namespaces
        for method in ns.methods
    ):
        return False

    if service_filter.transport_type != TransportType.GRPC:
        transport = _reported(registration.transport, _FILTER_TRANSPORTS)
        if transport != service_filter.transport_type:
            return False

    if service_filter.available_only and not registration.is_available():
        return False

    return all(
        check_extension_path(registration.ifex_schema, path)
        for path in service_filter.extension_paths
    )


class ServiceRegistry:
    """Thread-safe store of service registrations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._services: dict[str, ServiceRegistration] = {}
        self._by_name: dict[str, list[str]] = {}

    def get_service(self, service_name: str) -> ServiceInfo:
        """Return the first available service registered under a name."""
        log.info("get_service called for: %s", service_name)
        with self._lock:
            for registration_id in self._by_name.get(service_name, []):
                registration = self._services.get(registration_id)
                if registration is not None and registration.is_available():
                    log.info("Found service %s at %s", service_name, registration.address)
                    return _to_info(registration, _GET_TRANSPORTS)
        log.info("Service %s not found or not available", service_name)
        raise ServiceNotFound(f"Service not found: {service_name}")

    def register_service(self, info: ServiceInfo) -> str:
        """Store a service and return its new registration id."""
        with self._lock:
            registration_id = f"reg_{next(self._ids)}"

        registration = ServiceRegistration(
            registration_id=registration_id,
            name=info.name,
            version=info.version,
            description=info.description,
            address=info.address,
            transport=TransportType(info.transport),
            status=ServiceStatus(info.status),
            namespaces=copy.deepcopy(info.namespaces),
            ifex_schema=info.ifex_schema,
            last_heartbeat=time.time(),
        )

        if not registration.namespaces and registration.ifex_schema:
            try:
                registration.namespaces = _namespaces_from_schema(registration.ifex_schema)
                count = sum(len(ns.methods) for ns in registration.namespaces)
                log.info("Parsed %d methods from IFEX schema for %s", count, registration.name)
            except (yaml.YAMLError, ValueError, TypeError) as exc:
                log.warning("Could not parse IFEX schema: %s", exc)

        with self._lock:
            self._services[registration_id] = registration
            self._by_name.setdefault(registration.name, []).append(registration_id)

        log.info("Service %s registered with ID: %s", registration.name, registration_id)
        return registration_id

    def unregister_service(self, registration_id: str) -> None:
        """Remove a registration."""
        with self._lock:
            registration = self._services.pop(registration_id, None)
            if registration is None:
                log.warning("Registration ID not found: %s", registration_id)
                raise ServiceNotFound("Registration ID not found")
            ids = self._by_name.get(registration.name, [])
            ids[:] = [other for other in ids if other != registration_id]
            if not ids:
                self._by_name.pop(registration.name, None)
        log.info("Service unregistered successfully")

    def query_services(self, service_filter: ServiceFilter | None = None) -> list[ServiceInfo]:
        """Return every registered service matching the filter."""
        service_filter = service_filter or ServiceFilter()
        with self._lock:
            found = [
                _to_info(registration, _QUERY_TRANSPORTS)
                for registration in self._services.values()
                if matches_filter(registration, service_filter)
            ]
        log.info("Found %d matching services", len(found))
        return found

    def heartbeat(self, registration_id: str, status: ServiceStatus) -> None:
        """Refresh a registration's heartbeat time and status."""
        with self._lock:
            registration = self._services.get(registration_id)
            if registration is None:
                log.warning("Registration ID not found: %s", registration_id)
                raise ServiceNotFound("Registration ID not found")
            registration.last_heartbeat = time.time()
            registration.status = ServiceStatus(status)
        log.info("Heartbeat updated for service %s with status: %s", registration.name, status)