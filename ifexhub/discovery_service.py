"""gRPC front end and client for the service registry."""

from __future__ import annotations

import json
import logging
from concurrent import futures
from typing import Any

import grpc

from ifexhub.registry import (
    MethodInfo,
    NamespaceInfo,
    ServiceFilter,
    ServiceInfo,
    ServiceNotFound,
    ServiceRegistry,
    ServiceStatus,
    TransportType,
)

log = logging.getLogger(__name__)

_PACKAGE = "swdv.service_discovery"
_METHODS = ("get_service", "register_service", "unregister_service", "query_services", "heartbeat")


def _service_name(method: str) -> str:
    return f"{_PACKAGE}.{method}_service"


def _method_path(method: str) -> str:
    return f"/{_service_name(method)}/{method}"


def _encode(message: dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode("utf-8")


def _decode(data: bytes) -> dict[str, Any]:
    return json.loads(data.decode("utf-8")) if data else {}


def _info_to_wire(info: ServiceInfo) -> dict[str, Any]:
    return {
        "name": info.name,
        "version": info.version,
        "description": info.description,
        "endpoint": {"address": info.address, "transport": TransportType(info.transport).name},
        "status": ServiceStatus(info.status).name,
        "namespaces": [
            {
                "name": ns.name,
                "description": ns.description,
                "methods": [{"name": m.name, "description": m.description} for m in ns.methods],
            }
            for ns in info.namespaces
        ],
        "ifex_schema": info.ifex_schema,
        "last_heartbeat": info.last_heartbeat,
    }


def _info_from_wire(data: dict[str, Any]) -> ServiceInfo:
    endpoint = data.get("endpoint") or {}
    return ServiceInfo(
        name=data.get("name", ""),
        version=data.get("version", ""),
        description=data.get("description", ""),
        address=endpoint.get("address", ""),
        transport=TransportType[endpoint.get("transport", "GRPC")],
        status=ServiceStatus[data.get("status", "AVAILABLE")],
        namespaces=[
            NamespaceInfo(
                name=ns.get("name", ""),
                description=ns.get("description", ""),
                methods=[
                    MethodInfo(m.get("name", ""), m.get("description", ""))
                    for m in ns.get("methods", [])
                ],
            )
            for ns in data.get("namespaces", [])
        ],
        ifex_schema=data.get("ifex_schema", ""),
        last_heartbeat=int(data.get("last_heartbeat", 0)),
    )


def _filter_to_wire(service_filter: ServiceFilter) -> dict[str, Any]:
    return {
        "name_pattern": service_filter.name_pattern,
        "has_method": service_filter.has_method,
        "transport_type": TransportType(service_filter.transport_type).name,
        "available_only": service_filter.available_only,
        "extension_paths": list(service_filter.extension_paths),
    }


def _filter_from_wire(data: dict[str, Any]) -> ServiceFilter:
    return ServiceFilter(
        name_pattern=data.get("name_pattern", ""),
        has_method=data.get("has_method", ""),
        transport_type=TransportType[data.get("transport_type", "GRPC")],
        available_only=bool(data.get("available_only", False)),
        extension_paths=tuple(data.get("extension_paths", ())),
    )


class DiscoveryServer:
    """Serves a ServiceRegistry over gRPC."""

    def __init__(self, registry: ServiceRegistry | None = None, max_workers: int = 10) -> None:
        self.registry = registry if registry is not None else ServiceRegistry()
        self._max_workers = max_workers
        self._server: grpc.Server | None = None
        log.info("Initializing Discovery Server")

    def start(self, listen_address: str) -> int:
        """Start listening and return the bound port."""
        server = grpc.server(futures.ThreadPoolExecutor(max_workers=self._max_workers))
        port = server.add_insecure_port(listen_address)
        if port == 0:
            raise RuntimeError(f"Could not listen on {listen_address}")
        handlers = {
            "get_service": self._get_service,
            "register_service": self._register_service,
            "unregister_service": self._unregister_service,
            "query_services": self._query_services,
            "heartbeat": self._heartbeat,
        }
        server.add_generic_rpc_handlers(
            tuple(
                grpc.method_handlers_generic_handler(
                    _service_name(name),
                    {
                        name: grpc.unary_unary_rpc_method_handler(
                            handler, request_deserializer=_decode, response_serializer=_encode
                        )
                    },
                )
                for name, handler in handlers.items()
            )
        )
        server.start()
        self._server = server
        log.info("Discovery server listening on %s", listen_address)
        return port

    def shutdown(self) -> None:
        """Stop the server."""
        if self._server is not None:
            log.info("Shutting down discovery server")
            self._server.stop(None).wait()

    def wait(self) -> None:
        """Block until the server terminates."""
        if self._server is not None:
            self._server.wait_for_termination()

    def __enter__(self) -> DiscoveryServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def _get_service(self, request: dict, context: grpc.ServicerContext) -> dict:
        try:
            info = self.registry.get_service(request.get("service_name", ""))
        except ServiceNotFound as exc:
            context.abort(grpc.StatusCode.NOT_FOUND, str(exc))
        return {"service_info": _info_to_wire(info)}

    def _register_service(self, request: dict, context: grpc.ServicerContext) -> dict:
        info = _info_from_wire(request.get("service_info") or {})
        return {"registration_id": self.registry.register_service(info)}

    def _unregister_service(self, request: dict, context: grpc.ServicerContext) -> dict:
        try:
            self.registry.unregister_service(request.get("registration_id", ""))
        except ServiceNotFound as exc:
            context.abort(grpc.StatusCode.NOT_FOUND, str(exc))
        return {}

    def _query_services(self, request: dict, context: grpc.ServicerContext) -> dict:
        service_filter = _filter_from_wire(request.get("filter") or {})
        services = self.registry.query_services(service_filter)
        return {"services": [_info_to_wire(info) for info in services]}

    def _heartbeat(self, request: dict, context: grpc.ServicerContext) -> dict:
        status = ServiceStatus[request.get("status", "AVAILABLE")]
        try:
            self.registry.heartbeat(request.get("registration_id", ""), status)
        except ServiceNotFound as exc:
            context.abort(grpc.StatusCode.NOT_FOUND, str(exc))
        return {}


class DiscoveryClient:
    """Client for a running DiscoveryServer."""

    def __init__(self, endpoint: str, timeout: float | None = 10.0) -> None:
        self.endpoint = endpoint
        self._timeout = timeout
        self._channel = grpc.insecure_channel(endpoint)
        self._calls = {
            name: self._channel.unary_unary(
                _method_path(name), request_serializer=_encode, response_deserializer=_decode
            )
            for name in _METHODS
        }

    def __enter__(self) -> DiscoveryClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._channel.close()

    def _call(self, name: str, request: dict[str, Any]) -> dict[str, Any]:
        return self._calls[name](request, timeout=self._timeout)

    def _call_registration(self, name: str, request: dict[str, Any]) -> None:
        try:
            self._call(name, request)
        except grpc.RpcError as exc:
            if exc.code() == grpc.StatusCode.NOT_FOUND:
                raise ServiceNotFound(exc.details()) from exc
            raise

    def get_service(self, service_name: str) -> ServiceInfo | None:
        """Return an available service by name, or None if there is none."""
        try:
            reply = self._call("get_service", {"service_name": service_name})
        except grpc.RpcError as exc:
            if exc.code() == grpc.StatusCode.NOT_FOUND:
                return None
            raise
        return _info_from_wire(reply.get("service_info") or {})

    def query_services(self, service_filter: ServiceFilter | None = None) -> list[ServiceInfo]:
        """Return all services matching a filter."""
        request = {"filter": _filter_to_wire(service_filter or ServiceFilter())}
        reply = self._call("query_services", request)
        return [_info_from_wire(item) for item in reply.get("services", [])]

    def register_service(self, info: ServiceInfo) -> str:
        """Register a service and return its registration id."""
        reply = self._call("register_service", {"service_info": _info_to_wire(info)})
        return reply.get("registration_id", "")

    def unregister_service(self, registration_id: str) -> None:
        """Remove a registration; raises ServiceNotFound if it is unknown."""
        self._call_registration("unregister_service", {"registration_id": registration_id})

    def send_heartbeat(self, registration_id: str, status: ServiceStatus) -> None:
        """Report liveness and status; raises ServiceNotFound if unknown."""
        self._call_registration(
            "heartbeat",
            {"registration_id": registration_id, "status": ServiceStatus(status).name},
        )