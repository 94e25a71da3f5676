"""Protobuf descriptors built at run time from IFEX method signatures."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Mapping
from typing import Any

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.descriptor import Descriptor, FieldDescriptor
from google.protobuf.message import Message

from ifexhub.model import (
    EnumDefinition,
    MethodSignature,
    Parameter,
    ParamType,
    StructDefinition,
)

log = logging.getLogger(__name__)

_Field = descriptor_pb2.FieldDescriptorProto

_SCALAR_TYPES = {
    ParamType.BOOLEAN: _Field.TYPE_BOOL,
    ParamType.INT8: _Field.TYPE_INT32,
    ParamType.INT16: _Field.TYPE_INT32,
    ParamType.INT32: _Field.TYPE_INT32,
    ParamType.INT64: _Field.TYPE_INT64,
    ParamType.UINT8: _Field.TYPE_UINT32,
    ParamType.UINT16: _Field.TYPE_UINT32,
    ParamType.UINT32: _Field.TYPE_UINT32,
    ParamType.UINT64: _Field.TYPE_UINT64,
    ParamType.FLOAT: _Field.TYPE_FLOAT,
    ParamType.DOUBLE: _Field.TYPE_DOUBLE,
    ParamType.STRING: _Field.TYPE_STRING,
    ParamType.BYTES: _Field.TYPE_BYTES,
}

# Integer C++ types: (bit width, signed).
_INT_WIDTHS = {
    FieldDescriptor.CPPTYPE_INT32: (32, True),
    FieldDescriptor.CPPTYPE_INT64: (64, True),
    FieldDescriptor.CPPTYPE_UINT32: (32, False),
    FieldDescriptor.CPPTYPE_UINT64: (64, False),
}

_SKIP = object()


def field_type(param: Parameter, package_name: str) -> tuple[int, str]:
    """The protobuf field type and referenced type name for a parameter."""
    scalar = _SCALAR_TYPES.get(param.type)
    if scalar is not None:
        return scalar, ""
    if param.type == ParamType.STRUCT:
        type_name = f".{package_name}.{param.element_type_name}"
        log.info("Created MESSAGE field '%s' with type_name: %s", param.name, type_name)
        return _Field.TYPE_MESSAGE, type_name
    if param.type == ParamType.ENUM:
        type_name = f".{package_name}.{param.element_type_name}"
        log.info("Created ENUM field '%s' with type: %s", param.name, type_name)
        return _Field.TYPE_ENUM, type_name
    if param.type == ParamType.ARRAY:
        log.error("Type ARRAY for '%s' - arrays are expressed with is_array", param.name)
    else:
        log.warning("Unknown parameter type for '%s', defaulting to STRING", param.name)
    return _Field.TYPE_STRING, ""


def _add_fields(
    message: descriptor_pb2.DescriptorProto, params: Iterable[Parameter], package_name: str
) -> None:
    for number, param in enumerate(params, start=1):
        proto_field = message.field.add()
        proto_field.name = param.name
        proto_field.number = number
        proto_field.label = _Field.LABEL_REPEATED if param.is_array else _Field.LABEL_OPTIONAL
        proto_type, type_name = field_type(param, package_name)
        proto_field.type = proto_type
        if type_name:
            proto_field.type_name = type_name


def _file_name(service_name: str) -> str:
    return f"{service_name}_service.proto"


def build_file_proto(
    service_name: str,
    method_name: str,
    signature: MethodSignature,
    structs: Iterable[StructDefinition] = (),
    enums: Iterable[EnumDefinition] = (),
) -> descriptor_pb2.FileDescriptorProto:
    """A proto3 file holding the schema's structs and enums and one method's messages."""
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_proto.name = _file_name(service_name)
    file_proto.package = f"swdv.{service_name}"
    file_proto.syntax = "proto3"

    for struct in structs:
        struct_message = file_proto.message_type.add()
        struct_message.name = struct.name
        _add_fields(struct_message, struct.members, file_proto.package)

    for enum_def in enums:
        enum_proto = file_proto.enum_type.add()
        enum_proto.name = enum_def.name
        for option in enum_def.options:
            value = enum_proto.value.add()
            value.name = option.name
            value.number = option.value

    request = file_proto.message_type.add()
    request.name = f"{method_name}_request"
    _add_fields(request, signature.input_parameters, file_proto.package)

    response = file_proto.message_type.add()
    response.name = f"{method_name}_response"
    _add_fields(response, signature.output_parameters, file_proto.package)
    return file_proto


def _is_repeated(field: FieldDescriptor) -> bool:
    return field.label == FieldDescriptor.LABEL_REPEATED


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _wrap(value: int | float, bits: int, signed: bool) -> int:
    number = int(value) % (1 << bits)
    if signed and number >= 1 << (bits - 1):
        number -= 1 << bits
    return number


def _scalar(field: FieldDescriptor, value: Any, repeated: bool) -> Any:
    """The value to store in a non-message field, or _SKIP if it does not fit."""
    cpp_type = field.cpp_type
    if cpp_type == FieldDescriptor.CPPTYPE_BOOL:
        return value if isinstance(value, bool) else _SKIP
    if cpp_type in _INT_WIDTHS:
        bits, signed = _INT_WIDTHS[cpp_type]
        return _wrap(value, bits, signed) if _is_number(value) else _SKIP
    if cpp_type in (FieldDescriptor.CPPTYPE_FLOAT, FieldDescriptor.CPPTYPE_DOUBLE):
        return float(value) if _is_number(value) else _SKIP
    if cpp_type == FieldDescriptor.CPPTYPE_STRING:
        if field.type == FieldDescriptor.TYPE_BYTES:
            if isinstance(value, str):
                return value.encode("utf-8")
            return _dump(value).encode("utf-8") if repeated else _SKIP
        return value if isinstance(value, str) else _dump(value)
    if cpp_type == FieldDescriptor.CPPTYPE_ENUM:
        if not _is_number(value):
            return _SKIP
        number = int(value)
        if number in field.enum_type.values_by_number:
            return number
        if not repeated:
            log.warning("Invalid enum value %d for field: %s", number, field.name)
        return _SKIP
    log.warning("Unsupported field type for field: %s", field.name)
    return _SKIP


def _fill_repeated(message: Message, field: FieldDescriptor, values: list[Any]) -> None:
    container = getattr(message, field.name)
    for element in values:
        if field.cpp_type == FieldDescriptor.CPPTYPE_MESSAGE:
            if isinstance(element, Mapping):
                try:
                    populate_message(container.add(), element)
                except (ValueError, TypeError) as exc:
                    log.error("Failed to populate array element for field %s: %s", field.name, exc)
            continue
        converted = _scalar(field, element, repeated=True)
        if converted is not _SKIP:
            container.append(converted)


def _fill_single(message: Message, field: FieldDescriptor, value: Any) -> None:
    if field.cpp_type == FieldDescriptor.CPPTYPE_MESSAGE:
        if isinstance(value, Mapping):
            sub_message = getattr(message, field.name)
            sub_message.SetInParent()
            try:
                populate_message(sub_message, value)
            except (ValueError, TypeError) as exc:
                raise ValueError(f"Failed to populate nested message {field.name}: {exc}") from exc
        return
    converted = _scalar(field, value, repeated=False)
    if converted is not _SKIP:
        setattr(message, field.name, converted)


def populate_message(message: Message, params: Mapping[str, Any] | None) -> None:
    """Set a message's fields from decoded JSON.

    Unknown keys and values of the wrong kind are skipped. Raises ValueError
    when a field cannot be set, TypeError when params is not an object.
    """
    if params is None:
        return
    if not isinstance(params, Mapping):
        raise TypeError("parameters must be a JSON object")
    descriptor = message.DESCRIPTOR
    for key, value in params.items():
        field = descriptor.fields_by_name.get(key)
        if field is None:
            log.warning("Field '%s' not found in protobuf descriptor", key)
            continue
        try:
            if _is_repeated(field):
                if not isinstance(value, list):
                    raise ValueError("expected a JSON array")
                _fill_repeated(message, field, value)
            else:
                _fill_single(message, field, value)
        except (ValueError, TypeError, OverflowError) as exc:
            log.error("Failed to set field %s: %s", key, exc)
            raise ValueError(f"Failed to set field {key}: {exc}") from exc


class DescriptorCache:
    """Per-service descriptor pools with the message classes built from them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pools: dict[str, descriptor_pool.DescriptorPool] = {}

    def message_classes(
        self,
        service_name: str,
        method_name: str,
        signature: MethodSignature,
        structs: Iterable[StructDefinition] = (),
        enums: Iterable[EnumDefinition] = (),
    ) -> tuple[type[Message], type[Message]]:
        """Request and response classes for a method; raises ValueError if they cannot be built."""
        file_name = _file_name(service_name)
        request_name = f"{method_name}_request"
        response_name = f"{method_name}_response"

        with self._lock:
            pool = self._pools.get(service_name)
            if pool is not None:
                try:
                    existing = pool.FindFileByName(file_name)
                except KeyError:
                    existing = None
                if existing is not None:
                    request = existing.message_types_by_name.get(request_name)
                    response = existing.message_types_by_name.get(response_name)
                    if request is not None and response is not None:
                        log.info("Reusing existing protobuf descriptors for %s", file_name)
                        return _classes(request, response)
                    log.info("New method detected, rebuilding service descriptor pool")
                    pool = None
            if pool is None:
                pool = descriptor_pool.DescriptorPool()
                self._pools[service_name] = pool

            file_proto = build_file_proto(service_name, method_name, signature, structs, enums)
            try:
                pool.AddSerializedFile(file_proto.SerializeToString())
                file_descriptor = pool.FindFileByName(file_name)
            except (TypeError, ValueError, KeyError) as exc:
                log.error("Failed to build proto file descriptor: %s", exc)
                self._pools[service_name] = descriptor_pool.DescriptorPool()
                raise ValueError("Failed to create protobuf descriptors") from exc

            request = file_descriptor.message_types_by_name.get(request_name)
            response = file_descriptor.message_types_by_name.get(response_name)
            if request is None or response is None:
                raise ValueError("Failed to create protobuf descriptors")
            return _classes(request, response)


def _classes(request: Descriptor, response: Descriptor) -> tuple[type[Message], type[Message]]:
    return message_factory.GetMessageClass(request), message_factory.GetMessageClass(response)