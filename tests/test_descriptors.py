import pytest
from google.protobuf import descriptor_pb2

from ifexhub.descriptors import (
    DescriptorCache,
    build_file_proto,
    field_type,
    populate_message,
)
from ifexhub.model import (
    EnumDefinition,
    EnumOption,
    MethodSignature,
    Parameter,
    ParamType,
    StructDefinition,
)

F = descriptor_pb2.FieldDescriptorProto

POINT = StructDefinition("Point", [Parameter("x", ParamType.INT32), Parameter("y", ParamType.INT32)])
MODE = EnumDefinition("Mode", [EnumOption("MODE_OFF", 0), EnumOption("MODE_ON", 1)])

SIGNATURE = MethodSignature(
    "configure",
    input_parameters=[
        Parameter("count", ParamType.INT32),
        Parameter("label", ParamType.STRING),
        Parameter("enabled", ParamType.BOOLEAN),
        Parameter("ratio", ParamType.DOUBLE),
        Parameter("blob", ParamType.BYTES),
        Parameter("origin", ParamType.STRUCT, "Point"),
        Parameter("points", ParamType.STRUCT, "Point[]", is_array=True),
        Parameter("mode", ParamType.ENUM, "Mode"),
        Parameter("values", ParamType.INT64, is_array=True),
    ],
    output_parameters=[Parameter("ok", ParamType.BOOLEAN)],
)


@pytest.fixture
def request_cls():
    request, _ = DescriptorCache().message_classes("climate", "configure", SIGNATURE, [POINT], [MODE])
    return request


@pytest.mark.parametrize(
    ("ptype", "expected"),
    [
        (ParamType.BOOLEAN, F.TYPE_BOOL),
        (ParamType.INT8, F.TYPE_INT32),
        (ParamType.INT16, F.TYPE_INT32),
        (ParamType.INT64, F.TYPE_INT64),
        (ParamType.UINT8, F.TYPE_UINT32),
        (ParamType.UINT64, F.TYPE_UINT64),
        (ParamType.FLOAT, F.TYPE_FLOAT),
        (ParamType.STRING, F.TYPE_STRING),
        (ParamType.BYTES, F.TYPE_BYTES),
        (ParamType.ARRAY, F.TYPE_STRING),
    ],
)
def test_field_type_scalars(ptype, expected):
    assert field_type(Parameter("p", ptype), "swdv.climate") == (expected, "")


def test_field_type_references_strip_array_suffix():
    struct = Parameter("points", ParamType.STRUCT, "Point[]", is_array=True)
    enum = Parameter("mode", ParamType.ENUM, "Mode")
    assert field_type(struct, "swdv.climate") == (F.TYPE_MESSAGE, ".swdv.climate.Point")
    assert field_type(enum, "swdv.climate") == (F.TYPE_ENUM, ".swdv.climate.Mode")


def test_build_file_proto_layout():
    proto = build_file_proto("climate", "configure", SIGNATURE, [POINT], [MODE])
    assert proto.name == "climate_service.proto"
    assert proto.package == "swdv.climate"
    assert proto.syntax == "proto3"
    assert [m.name for m in proto.message_type] == ["Point", "configure_request", "configure_response"]
    request = proto.message_type[1]
    assert [f.number for f in request.field] == list(range(1, len(SIGNATURE.input_parameters) + 1))
    labels = {f.name: f.label for f in request.field}
    assert labels["points"] == F.LABEL_REPEATED
    assert labels["count"] == F.LABEL_OPTIONAL
    assert [v.name for v in proto.enum_type[0].value] == ["MODE_OFF", "MODE_ON"]


def test_populate_round_trip(request_cls):
    message = request_cls()
    populate_message(
        message,
        {
            "count": 7,
            "label": "kitchen",
            "enabled": True,
            "ratio": 0.5,
            "blob": "abc",
            "origin": {"x": 1, "y": 2},
            "points": [{"x": 3}, {"y": 4}],
            "mode": 1,
            "values": [1, "skip", 2],
        },
    )
    parsed = request_cls.FromString(message.SerializeToString())
    assert parsed.count == 7
    assert parsed.label == "kitchen"
    assert parsed.enabled is True
    assert parsed.ratio == 0.5
    assert parsed.blob == b"abc"
    assert (parsed.origin.x, parsed.origin.y) == (1, 2)
    assert [(p.x, p.y) for p in parsed.points] == [(3, 0), (0, 4)]
    assert parsed.mode == 1
    assert list(parsed.values) == [1, 2]


def test_mismatched_values_are_skipped(request_cls):
    message = request_cls()
    populate_message(message, {"count": True, "enabled": 1, "mode": 5, "unknown": 3, "blob": 9})
    assert message.count == 0
    assert message.enabled is False
    assert message.mode == 0
    assert message.blob == b""


def test_string_field_takes_json_of_other_values(request_cls):
    message = request_cls()
    populate_message(message, {"label": {"a": 1}})
    assert message.label == '{"a":1}'


def test_integer_conversion_truncates_and_wraps(request_cls):
    message = request_cls()
    populate_message(message, {"count": 3.9})
    assert message.count == 3
    populate_message(message, {"count": 2**31})
    assert message.count == -(2**31)


def test_empty_struct_is_marked_present(request_cls):
    message = request_cls()
    populate_message(message, {"origin": {}})
    assert message.HasField("origin")


def test_none_params_leave_message_empty(request_cls):
    message = request_cls()
    populate_message(message, None)
    assert message.ByteSize() == 0


def test_non_object_params_rejected(request_cls):
    with pytest.raises(TypeError):
        populate_message(request_cls(), [1, 2])


def test_repeated_field_needs_array(request_cls):
    with pytest.raises(ValueError):
        populate_message(request_cls(), {"values": 3})


def test_cache_reuses_classes_for_same_method():
    cache = DescriptorCache()
    first = cache.message_classes("climate", "configure", SIGNATURE, [POINT], [MODE])
    second = cache.message_classes("climate", "configure", SIGNATURE, [POINT], [MODE])
    assert first[0] is second[0]
    assert first[1].DESCRIPTOR.full_name == "swdv.climate.configure_response"


def test_cache_rebuilds_for_new_method():
    cache = DescriptorCache()
    first, _ = cache.message_classes("climate", "configure", SIGNATURE, [POINT], [MODE])
    other = MethodSignature("reset", input_parameters=[Parameter("hard", ParamType.BOOLEAN)])
    reset_request, _ = cache.message_classes("climate", "reset", other)
    again, _ = cache.message_classes("climate", "configure", SIGNATURE, [POINT], [MODE])
    assert reset_request.DESCRIPTOR.full_name == "swdv.climate.reset_request"
    assert again.DESCRIPTOR.full_name == first.DESCRIPTOR.full_name
    assert again is not first and again.DESCRIPTOR.fields_by_name.keys() == first.DESCRIPTOR.fields_by_name.keys()


def test_unresolved_type_fails():
    broken = MethodSignature("bad", input_parameters=[Parameter("m", ParamType.STRUCT, "Missing")])
    with pytest.raises(ValueError):
        DescriptorCache().message_classes("climate", "bad", broken)