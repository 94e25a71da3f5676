"""Value types shared by the dynamic caller and the dispatcher."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from ifexhub.registry import ServiceInfo, TransportType

_ARRAY_SUFFIX = "[]"


class ParamType(enum.IntEnum):
    """Type of an IFEX parameter or struct member."""

    BOOLEAN = 0
    INT8 = 1
    INT16 = 2
    INT32 = 3
    INT64 = 4
    UINT8 = 5
    UINT16 = 6
    UINT32 = 7
    UINT64 = 8
    FLOAT = 9
    DOUBLE = 10
    STRING = 11
    BYTES = 12
    STRUCT = 13
    ARRAY = 14
    ENUM = 15


@dataclass
class Parameter:
    """A method argument, result or struct member."""

    name: str
    type: ParamType
    type_name: str = ""
    is_array: bool = False
    description: str = ""

    @property
    def element_type_name(self) -> str:
        """The type name without a trailing ``[]``."""
        if len(self.type_name) > len(_ARRAY_SUFFIX) and self.type_name.endswith(_ARRAY_SUFFIX):
            return self.type_name[: -len(_ARRAY_SUFFIX)]
        return self.type_name


@dataclass
class MethodSignature:
    """Inputs and outputs of one IFEX method."""

    method_name: str
    namespace_name: str = ""
    description: str = ""
    input_parameters: list[Parameter] = field(default_factory=list)
    output_parameters: list[Parameter] = field(default_factory=list)


@dataclass
class StructDefinition:
    """A struct type declared in an IFEX schema."""

    name: str
    members: list[Parameter] = field(default_factory=list)
    description: str = ""


@dataclass(frozen=True)
class EnumOption:
    """One named value of an enumeration."""

    name: str
    value: int


@dataclass
class EnumDefinition:
    """An enumeration declared in an IFEX schema."""

    name: str
    options: list[EnumOption] = field(default_factory=list)
    description: str = ""

    def option_for(self, value: int) -> EnumOption | None:
        """The option carrying a number, or None."""
        return next((option for option in self.options if option.value == value), None)


class CallStatus(enum.IntEnum):
    """Outcome of a dynamic method call."""

    SUCCESS = 0
    TIMEOUT = 1
    SERVICE_UNAVAILABLE = 2
    METHOD_NOT_FOUND = 3
    INVALID_PARAMETERS = 4
    INTERNAL_ERROR = 5


@dataclass
class CallRequest:
    """A request to call a method of a service with JSON parameters."""

    service_name: str
    method_name: str
    parameters_json: str = ""
    timeout_ms: int = 30000


@dataclass
class CallResponse:
    """Result of a dynamic method call."""

    success: bool = False
    status: CallStatus = CallStatus.INTERNAL_ERROR
    error_message: str = ""
    result_json: str = ""
    duration_ms: int = 0

    @classmethod
    def failure(cls, status: CallStatus, message: str, duration_ms: int = 0) -> CallResponse:
        """A failed response with a status and a message."""
        return cls(success=False, status=status, error_message=message, duration_ms=duration_ms)

    @classmethod
    def succeeded(cls, result_json: str, duration_ms: int = 0) -> CallResponse:
        """A successful response carrying the JSON result."""
        return cls(
            success=True,
            status=CallStatus.SUCCESS,
            result_json=result_json,
            duration_ms=duration_ms,
        )


@dataclass(frozen=True)
class ServiceEndpoint:
    """Where a service is reachable."""

    address: str
    transport: TransportType = TransportType.GRPC

    @classmethod
    def from_info(cls, info: ServiceInfo) -> ServiceEndpoint:
        """The endpoint of a discovered service."""
        return cls(address=info.address, transport=TransportType(info.transport))