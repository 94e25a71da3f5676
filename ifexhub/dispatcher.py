"""Dispatcher that validates method calls and forwards them to discovered services."""

from __future__ import annotations

import enum
import json
import logging
import socket
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from ifexhub.caller import DynamicCaller, _IfexSchema
from ifexhub.model import (
    CallRequest,
    CallResponse,
    CallStatus,
    Parameter,
    ParamType,
    ServiceEndpoint,
)
from ifexhub.registry import (
    ServiceFilter,
    ServiceInfo,
    ServiceNotFound,
    ServiceStatus,
    TransportType,
)

log = logging.getLogger(__name__)

SERVICE_NAME = "ifex-dispatcher"
SERVICE_VERSION = "1.0.0"
SERVICE_DESCRIPTION = "IFEX Dynamic Method Dispatcher Service"

_INTEGER_TYPES = frozenset(
    {
        ParamType.INT8,
        ParamType.INT16,
        ParamType.INT32,
        ParamType.INT64,
        ParamType.UINT8,
        ParamType.UINT16,
        ParamType.UINT32,
        ParamType.UINT64,
    }
)


class DispatchStatus(enum.Enum):
    """Outcome of a dispatched call as reported on the wire."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    METHOD_NOT_FOUND = "METHOD_NOT_FOUND"
    INVALID_PARAMETERS = "INVALID_PARAMETERS"


_STATUS_BY_CALL = {
    CallStatus.TIMEOUT: DispatchStatus.TIMEOUT,
    CallStatus.SERVICE_UNAVAILABLE: DispatchStatus.SERVICE_UNAVAILABLE,
    CallStatus.METHOD_NOT_FOUND: DispatchStatus.METHOD_NOT_FOUND,
    CallStatus.INVALID_PARAMETERS: DispatchStatus.INVALID_PARAMETERS,
}


@dataclass
class CallResult:
    """What the dispatcher reports for one call."""

    status: DispatchStatus
    response: str = ""
    error_message: str = ""
    duration_ms: int = 0
    service_endpoint: str = ""

    def to_dict(self) -> dict[str, Any]:
        """The wire form of the result."""
        return {
            "status": self.status.name,
            "response": self.response,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "service_endpoint": self.service_endpoint,
        }


class _Discovery(Protocol):
    def get_service(self, service_name: str) -> ServiceInfo | None: ...

    def query_services(self, service_filter: ServiceFilter) -> list[ServiceInfo]: ...

    def register_service(self, info: ServiceInfo) -> str: ...


class _Caller(Protocol):
    def call_method(
        self, request: CallRequest, ifex_schema: str, endpoint: ServiceEndpoint | None = None
    ) -> CallResponse: ...


def _primary_ip() -> str:
    try:
        addresses = socket.gethostbyname_ex(socket.gethostname())[2]
    except OSError:
        return ""
    return next((address for address in addresses if not address.startswith("127.")), "")


def _matches(param_type: ParamType, value: Any) -> bool:
    if param_type == ParamType.BOOLEAN:
        return isinstance(value, bool)
    if param_type in _INTEGER_TYPES or param_type == ParamType.ENUM:
        return isinstance(value, int) and not isinstance(value, bool)
    if param_type in (ParamType.FLOAT, ParamType.DOUBLE):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if param_type in (ParamType.STRING, ParamType.BYTES):
        return isinstance(value, str)
    if param_type == ParamType.STRUCT:
        return isinstance(value, Mapping)
    return True


def _type_label(param: Parameter) -> str:
    return param.element_type_name or param.type.name.lower()


def _type_errors(param: Parameter, value: Any) -> list[str]:
    label = _type_label(param)
    if param.is_array:
        if not isinstance(value, list):
            return [f"Parameter '{param.name}' must be an array of {label}"]
        return [
            f"Parameter '{param.name}' element {index} must be {label}"
            for index, element in enumerate(value)
            if not _matches(param.type, element)
        ]
    if not _matches(param.type, value):
        return [f"Parameter '{param.name}' must be {label}"]
    return []


def _method_not_found(errors: list[str]) -> bool:
    return any("Method" in error and "not found" in error for error in errors)


class Dispatcher:
    """Looks up services, validates parameters and forwards calls."""

    def __init__(self, discovery: _Discovery, caller: _Caller | None = None) -> None:
        self._discovery = discovery
        self._caller: _Caller = caller if caller is not None else DynamicCaller(discovery)

    def call_method(
        self,
        service_name: str,
        method_name: str,
        parameters: str = "",
        timeout_ms: int = 0,
    ) -> CallResult:
        """Call a method of a service with JSON parameters."""
        log.info("Calling method: %s.%s", service_name, method_name)
        started = time.perf_counter()

        endpoint = self.find_service_endpoint(service_name)
        if not endpoint:
            log.error("Service endpoint not found for: %s (method: %s)", service_name, method_name)
            return CallResult(
                DispatchStatus.SERVICE_UNAVAILABLE,
                error_message=f"Service not found: {service_name}",
            )

        ifex_schema = self.get_service_schema(service_name)
        if not ifex_schema:
            log.error("Service schema not found for: %s (method: %s)", service_name, method_name)
            return CallResult(
                DispatchStatus.SERVICE_UNAVAILABLE,
                error_message=f"Service schema not available: {service_name}",
            )

        decoded: Any = None
        if parameters:
            try:
                decoded = json.loads(parameters)
            except json.JSONDecodeError as exc:
                log.error("Failed to parse JSON parameters: %s", exc)
                return CallResult(
                    DispatchStatus.INVALID_PARAMETERS,
                    error_message=f"Invalid JSON parameters: {exc}",
                )

        errors = self.validate_method_parameters(service_name, method_name, decoded, ifex_schema)
        if errors:
            log.info("Validation failed with %d errors", len(errors))
            status = (
                DispatchStatus.METHOD_NOT_FOUND
                if _method_not_found(errors)
                else DispatchStatus.INVALID_PARAMETERS
            )
            message = "Parameter validation failed: " + "".join(f"{error}; " for error in errors)
            return CallResult(status, error_message=message)

        request = CallRequest(
            service_name=service_name, method_name=method_name, parameters_json=parameters
        )
        if timeout_ms > 0:
            request.timeout_ms = timeout_ms
        response = self._caller.call_method(
            request, ifex_schema, ServiceEndpoint(address=endpoint, transport=TransportType.GRPC)
        )
        duration_ms = int((time.perf_counter() - started) * 1000)

        if response.success:
            return CallResult(
                DispatchStatus.SUCCESS,
                response=response.result_json,
                duration_ms=duration_ms,
                service_endpoint=endpoint,
            )
        return CallResult(
            _STATUS_BY_CALL.get(response.status, DispatchStatus.FAILED),
            error_message=response.error_message,
            duration_ms=duration_ms,
            service_endpoint=endpoint,
        )

    def find_service_endpoint(self, service_name: str) -> str:
        """Address of an available instance of a service, or ''."""
        log.info("Looking up endpoint for service: %s", service_name)
        try:
            info = self._discovery.get_service(service_name)
        except ServiceNotFound:
            info = None
        except Exception as exc:  # noqa: BLE001 - a failed lookup means no endpoint
            log.error("Failed to find service %s: %s", service_name, exc)
            return ""
        if info is None:
            log.warning("No endpoint found for service: %s", service_name)
            return ""
        log.info("Found endpoint for %s: %s", service_name, info.address)
        return info.address

    def get_service_schema(self, service_name: str) -> str:
        """IFEX schema of the service registered under exactly this name, or ''."""
        try:
            services = self._discovery.query_services(ServiceFilter(name_pattern=service_name))
        except Exception as exc:  # noqa: BLE001 - a failed query means no schema
            log.error("Failed to get schema for service %s: %s", service_name, exc)
            return ""
        for service in services:
            if service.name == service_name:
                log.info(
                    "Found IFEX schema for %s, length: %d", service_name, len(service.ifex_schema)
                )
                return service.ifex_schema
        log.warning("No schema found for service: %s", service_name)
        return ""

    def validate_method_parameters(
        self,
        service_name: str,
        method_name: str,
        parameters: Any,
        ifex_schema: str,
    ) -> list[str]:
        """Problems with a call's decoded parameters; empty when the call is valid."""
        if not ifex_schema:
            return [f"No IFEX schema available for service: {service_name}"]
        if parameters is not None and not isinstance(parameters, Mapping):
            return ["Parameters must be a JSON object"]
        try:
            schema = _IfexSchema(ifex_schema)
        except ValueError:
            return [f"Failed to parse IFEX schema for service: {service_name}"]
        try:
            signature = schema.methods.get(method_name)
            if signature is None:
                return [f"Method '{method_name}' not found in service: {service_name}"]
            inputs = {param.name: param for param in signature.input_parameters}
            errors: list[str] = []
            for key, value in (parameters or {}).items():
                param = inputs.get(key)
                if param is None:
                    errors.append(f"Unknown parameter: {key}")
                    continue
                errors.extend(_type_errors(param, value))
            return errors
        except Exception as exc:  # noqa: BLE001 - reported as a validation error
            return [f"Validation error: {exc}"]

    def register_with_discovery(self, port: int, ifex_schema: str) -> bool:
        """Register the dispatcher itself with discovery."""
        log.info("Registering IFEX Dispatcher with service discovery on port %d", port)
        primary_ip = _primary_ip()
        if not primary_ip:
            log.warning("Could not determine primary IP address, falling back to localhost")
            primary_ip = "localhost"
        info = ServiceInfo(
            name=SERVICE_NAME,
            version=SERVICE_VERSION,
            description=SERVICE_DESCRIPTION,
            address=f"{primary_ip}:{port}",
            transport=TransportType.GRPC,
            status=ServiceStatus.AVAILABLE,
            ifex_schema=ifex_schema,
        )
        log.info("Registering with endpoint: %s", info.address)
        try:
            registration_id = self._discovery.register_service(info)
        except Exception as exc:  # noqa: BLE001 - any failure means not registered
            log.error("Registration failed: %s", exc)
            return False
        if not registration_id:
            log.error("Failed to register with service discovery")
            return False
        log.info("Successfully registered with service discovery, ID: %s", registration_id)
        return True