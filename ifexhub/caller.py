"""Calls IFEX service methods over gRPC without generated stubs."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Iterable, Iterator, Mapping
from typing import Any, Protocol

import grpc
import yaml
from google.protobuf import json_format
from google.protobuf.message import DecodeError, Message

from ifexhub.descriptors import DescriptorCache, populate_message
from ifexhub.model import (
    CallRequest,
    CallResponse,
    CallStatus,
    EnumDefinition,
    EnumOption,
    MethodSignature,
    Parameter,
    ParamType,
    ServiceEndpoint,
    StructDefinition,
)
from ifexhub.registry import ServiceInfo, ServiceNotFound

log = logging.getLogger(__name__)

ENDPOINT_CACHE_TTL = 10.0

_PRIMITIVES = {
    "boolean": ParamType.BOOLEAN,
    "bool": ParamType.BOOLEAN,
    "int8": ParamType.INT8,
    "int16": ParamType.INT16,
    "int32": ParamType.INT32,
    "int64": ParamType.INT64,
    "uint8": ParamType.UINT8,
    "uint16": ParamType.UINT16,
    "uint32": ParamType.UINT32,
    "uint64": ParamType.UINT64,
    "float": ParamType.FLOAT,
    "double": ParamType.DOUBLE,
    "string": ParamType.STRING,
    "bytes": ParamType.BYTES,
    "opaque": ParamType.BYTES,
}

_STATUS_BY_CODE = {
    grpc.StatusCode.DEADLINE_EXCEEDED: CallStatus.TIMEOUT,
    grpc.StatusCode.UNAVAILABLE: CallStatus.SERVICE_UNAVAILABLE,
    grpc.StatusCode.NOT_FOUND: CallStatus.METHOD_NOT_FOUND,
    grpc.StatusCode.INVALID_ARGUMENT: CallStatus.INVALID_PARAMETERS,
}

_EXAMPLE_VALUES: dict[ParamType, Any] = {
    ParamType.BOOLEAN: True,
    ParamType.INT32: 42,
    ParamType.DOUBLE: 3.14,
}


class _Discovery(Protocol):
    def get_service(self, service_name: str) -> ServiceInfo | None: ...


def method_path(service_name: str, method_name: str) -> str:
    """The gRPC path under which a service exposes one method."""
    return f"/swdv.{service_name}.{method_name}_service/{method_name}"


def generate_example_parameters(signature: MethodSignature) -> str:
    """Indented JSON with an example value for every input parameter."""
    params: dict[str, Any] = {}
    for param in signature.input_parameters:
        if param.type == ParamType.STRING:
            params[param.name] = f"example_{param.name}"
        else:
            params[param.name] = _EXAMPLE_VALUES.get(param.type)
    return json.dumps(params, indent=2)


def _walk_namespaces(namespaces: Any) -> Iterator[Mapping[str, Any]]:
    for namespace in namespaces or ():
        if isinstance(namespace, Mapping):
            yield namespace
            yield from _walk_namespaces(namespace.get("namespaces"))


def _entries(namespace: Mapping[str, Any], key: str) -> Iterable[Mapping[str, Any]]:
    return (entry for entry in namespace.get(key) or () if isinstance(entry, Mapping))


class _IfexSchema:
    """The methods, structs and enumerations declared in an IFEX YAML document."""

    def __init__(self, text: str) -> None:
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid IFEX schema: {exc}") from exc
        if not isinstance(document, Mapping):
            raise ValueError("IFEX schema must be a mapping")
        namespaces = list(_walk_namespaces(document.get("namespaces")))

        self._struct_names = {
            str(entry.get("name", "")) for ns in namespaces for entry in _entries(ns, "structs")
        }
        self._enum_names = {
            str(entry.get("name", ""))
            for ns in namespaces
            for entry in _entries(ns, "enumerations")
        }
        self._typedefs = {
            str(entry.get("name", "")): str(entry.get("datatype", "string"))
            for ns in namespaces
            for entry in _entries(ns, "typedefs")
        }

        self.structs = [
            StructDefinition(
                name=str(entry.get("name", "")),
                members=[self._parameter(member) for member in _entries(entry, "members")],
                description=str(entry.get("description") or ""),
            )
            for ns in namespaces
            for entry in _entries(ns, "structs")
        ]
        self.enums = [
            EnumDefinition(
                name=str(entry.get("name", "")),
                options=[
                    EnumOption(str(option.get("name", "")), int(option.get("value", index)))
                    for index, option in enumerate(_entries(entry, "options"))
                ],
                description=str(entry.get("description") or ""),
            )
            for ns in namespaces
            for entry in _entries(ns, "enumerations")
        ]
        self.methods: dict[str, MethodSignature] = {}
        for ns in namespaces:
            for entry in _entries(ns, "methods"):
                name = str(entry.get("name", ""))
                self.methods.setdefault(
                    name,
                    MethodSignature(
                        method_name=name,
                        namespace_name=str(ns.get("name") or ""),
                        description=str(entry.get("description") or ""),
                        input_parameters=[self._parameter(p) for p in _entries(entry, "input")],
                        output_parameters=[
                            self._parameter(p)
                            for key in ("output", "returns")
                            for p in _entries(entry, key)
                        ],
                    ),
                )

    def _resolve(self, type_name: str, seen: frozenset[str] = frozenset()) -> tuple[ParamType, str]:
        if type_name in _PRIMITIVES:
            return _PRIMITIVES[type_name], type_name
        if type_name in self._struct_names:
            return ParamType.STRUCT, type_name
        if type_name in self._enum_names:
            return ParamType.ENUM, type_name
        if type_name in self._typedefs and type_name not in seen:
            underlying = self._typedefs[type_name].removesuffix("[]")
            return self._resolve(underlying, seen | {type_name})
        return ParamType.STRING, type_name

    def _parameter(self, entry: Mapping[str, Any]) -> Parameter:
        datatype = str(entry.get("datatype") or "string")
        is_array = datatype.endswith("[]")
        base = datatype.removesuffix("[]")
        param_type, resolved = self._resolve(base)
        return Parameter(
            name=str(entry.get("name", "")),
            type=param_type,
            type_name=resolved + ("[]" if is_array else ""),
            is_array=is_array,
            description=str(entry.get("description") or ""),
        )


def _to_json(message: Message) -> str:
    options = {"preserving_proto_field_name": True, "use_integers_for_enums": True}
    try:
        data = json_format.MessageToDict(
            message, always_print_fields_with_no_presence=True, **options
        )
    except TypeError:
        data = json_format.MessageToDict(message, including_default_value_fields=True, **options)
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


class DynamicCaller:
    """Calls methods described by an IFEX schema on any gRPC service."""

    def __init__(
        self,
        discovery: _Discovery | None = None,
        descriptors: DescriptorCache | None = None,
    ) -> None:
        self._discovery = discovery
        self._descriptors = descriptors if descriptors is not None else DescriptorCache()
        self._cache_lock = threading.Lock()
        self._endpoints: dict[str, tuple[ServiceEndpoint, float]] = {}
        self._channel_lock = threading.Lock()
        self._channels: dict[str, grpc.Channel] = {}

    def __enter__(self) -> DynamicCaller:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close every cached channel."""
        with self._channel_lock:
            for channel in self._channels.values():
                channel.close()
            self._channels.clear()

    def _find_endpoint(self, service_name: str) -> ServiceEndpoint | None:
        with self._cache_lock:
            cached = self._endpoints.get(service_name)
            if cached is not None and time.monotonic() - cached[1] < ENDPOINT_CACHE_TTL:
                log.info("Cache hit for service: %s", service_name)
                return cached[0]
        if self._discovery is None:
            return None
        try:
            info = self._discovery.get_service(service_name)
        except ServiceNotFound:
            info = None
        if info is None:
            return None
        endpoint = ServiceEndpoint.from_info(info)
        with self._cache_lock:
            self._endpoints[service_name] = (endpoint, time.monotonic())
        return endpoint

    def _channel(self, address: str) -> grpc.Channel:
        with self._channel_lock:
            channel = self._channels.get(address)
            if channel is None:
                channel = grpc.insecure_channel(address)
                self._channels[address] = channel
            return channel

    def call_method(
        self,
        request: CallRequest,
        ifex_schema: str,
        endpoint: ServiceEndpoint | None = None,
    ) -> CallResponse:
        """Call a method; without an endpoint the service is looked up via discovery."""
        if endpoint is None:
            endpoint = self._find_endpoint(request.service_name)
            if endpoint is None:
                return CallResponse.failure(
                    CallStatus.SERVICE_UNAVAILABLE, f"Service not found: {request.service_name}"
                )

        started = time.perf_counter()
        try:
            response = self._call(request, ifex_schema, endpoint)
        except Exception as exc:  # noqa: BLE001 - any failure becomes an internal error
            log.error("Exception during dynamic call: %s", exc)
            response = CallResponse.failure(CallStatus.INTERNAL_ERROR, f"Exception: {exc}")
        response.duration_ms = int((time.perf_counter() - started) * 1000)
        return response

    def _call(
        self, request: CallRequest, ifex_schema: str, endpoint: ServiceEndpoint
    ) -> CallResponse:
        log.info(
            "Dynamic call to %s.%s at %s",
            request.service_name,
            request.method_name,
            endpoint.address,
        )
        schema = _IfexSchema(ifex_schema)
        signature = schema.methods.get(request.method_name)
        if signature is None:
            log.error("Method not found in IFEX schema: %s", request.method_name)
            return CallResponse.failure(
                CallStatus.METHOD_NOT_FOUND, f"Method not found: {request.method_name}"
            )

        try:
            params = json.loads(request.parameters_json)
        except json.JSONDecodeError as exc:
            return CallResponse.failure(
                CallStatus.INVALID_PARAMETERS, f"Invalid JSON parameters: {exc}"
            )

        try:
            request_class, response_class = self._descriptors.message_classes(
                request.service_name, request.method_name, signature, schema.structs, schema.enums
            )
        except ValueError:
            return CallResponse.failure(
                CallStatus.INTERNAL_ERROR, "Failed to create protobuf descriptors"
            )

        request_message = request_class()
        try:
            populate_message(request_message, params)
        except ValueError:
            return CallResponse.failure(
                CallStatus.INVALID_PARAMETERS, "Failed to populate request message"
            )

        return self._invoke(request, endpoint.address, request_message, response_class)

    def _invoke(
        self,
        request: CallRequest,
        address: str,
        request_message: Message,
        response_class: type[Message],
    ) -> CallResponse:
        path = method_path(request.service_name, request.method_name)
        log.info("Calling gRPC method: %s", path)
        call = self._channel(address).unary_unary(path)
        try:
            payload = call(
                request_message.SerializeToString(), timeout=request.timeout_ms / 1000.0
            )
        except grpc.RpcError as exc:
            code = exc.code()
            details = exc.details() or ""
            log.error("gRPC call %s to %s failed: %s - %s", path, address, code, details)
            return CallResponse.failure(
                _STATUS_BY_CODE.get(code, CallStatus.INTERNAL_ERROR),
                f"gRPC error: {code.value[0]} - {details}",
            )

        response_message = response_class()
        try:
            response_message.ParseFromString(payload)
        except DecodeError:
            return CallResponse.failure(
                CallStatus.INTERNAL_ERROR, "Failed to parse response protobuf"
            )
        try:
            result = _to_json(response_message)
        except (TypeError, ValueError) as exc:
            return CallResponse.failure(
                CallStatus.INTERNAL_ERROR, f"Failed to convert response to JSON: {exc}"
            )
        log.info("Converted response to JSON: %s", result)
        return CallResponse.succeeded(result)

    def generate_example_parameters(self, method_name: str, ifex_schema: str) -> str:
        """Example JSON parameters for a method, or ``{}`` if it cannot be found."""
        try:
            signature = _IfexSchema(ifex_schema).methods.get(method_name)
        except (ValueError, TypeError) as exc:
            log.error("Failed to generate example parameters: %s", exc)
            return "{}"
        if signature is None:
            return "{}"
        return generate_example_parameters(signature)