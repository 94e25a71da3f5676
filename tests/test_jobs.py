import time
from datetime import datetime, timedelta, timezone

import pytest

from ifexhub.jobs import (
    Job,
    JobFilter,
    JobStatus,
    ViewType,
    calendar_view_range,
    format_iso8601,
    matches_filter,
    next_run_time,
    parse_iso8601,
)


def _create(**overrides):
    data = {
        "title": "Warm cabin",
        "service": "climate",
        "method": "set_temperature",
        "parameters": '{"target":21}',
        "scheduled_time": "2024-03-15T10:30:00Z",
    }
    data.update(overrides)
    return data


def test_parse_with_z_suffix():
    assert parse_iso8601("2024-03-15T10:30:00Z") == datetime(
        2024, 3, 15, 10, 30, 0, tzinfo=timezone.utc
    )


def test_parse_without_suffix_is_utc():
    assert parse_iso8601("2024-03-15T10:30:00") == parse_iso8601("2024-03-15T10:30:00Z")


@pytest.mark.parametrize("text", ["", "tomorrow", "2024-03-15", "2024-13-01T00:00:00Z"])
def test_parse_rejects_malformed(text):
    with pytest.raises(ValueError, match="Failed to parse ISO 8601 datetime"):
        parse_iso8601(text)


@pytest.mark.parametrize("text", ["2024-03-15T10:30:00Z", "1999-12-31T23:59:59Z"])
def test_format_round_trip(text):
    assert format_iso8601(parse_iso8601(text)) == text


def test_format_drops_fractional_seconds_and_converts_to_utc():
    moment = datetime(2024, 3, 15, 12, 30, 0, 999999, tzinfo=timezone(timedelta(hours=2)))
    assert format_iso8601(moment) == "2024-03-15T10:30:00Z"


@pytest.mark.parametrize(
    ("rule", "step"),
    [
        ("daily", timedelta(days=1)),
        ("weekly", timedelta(days=7)),
        ("hourly", timedelta(hours=1)),
        ("minutely", timedelta(minutes=1)),
    ],
)
def test_next_run_time_for_known_rules(rule, step):
    after = parse_iso8601("2024-03-15T10:30:00Z")
    assert next_run_time(Job(recurrence_rule=rule), after) == after + step


@pytest.mark.parametrize("rule", ["", "0 * * * *", "Daily"])
def test_next_run_time_unknown_rule_is_none(rule):
    assert next_run_time(Job(recurrence_rule=rule), parse_iso8601("2024-03-15T10:30:00Z")) is None


def test_from_create_fills_fields():
    job = Job.from_create(_create(recurrence_rule="daily", end_time="2024-04-01T00:00:00Z"))
    assert job.title == "Warm cabin"
    assert job.service_name == "climate"
    assert job.method_name == "set_temperature"
    assert job.parameters == {"target": 21}
    assert job.scheduled_time == parse_iso8601("2024-03-15T10:30:00Z")
    assert job.end_time == parse_iso8601("2024-04-01T00:00:00Z")
    assert job.status is JobStatus.PENDING
    assert job.id == ""
    assert job.created_at == job.updated_at


def test_from_create_invalid_parameters_become_empty_object():
    assert Job.from_create(_create(parameters="{not json")).parameters == {}


def test_from_create_without_parameters_dumps_null():
    job = Job.from_create(_create(parameters=""))
    assert job.parameters is None
    assert job.to_dict()["parameters"] == "null"


def test_from_create_requires_scheduled_time():
    with pytest.raises(ValueError):
        Job.from_create(_create(scheduled_time=""))


def test_to_dict_omits_unset_optional_fields():
    data = Job.from_create(_create()).to_dict()
    for key in ("recurrence_rule", "end_time", "executed_at", "next_run_time",
                "error_message", "result", "service_address"):
        assert key not in data
    assert data["status"] == "PENDING"


def test_to_dict_round_trips_through_from_create():
    original = Job.from_create(
        _create(recurrence_rule="weekly", end_time="2024-05-01T08:00:00Z",
                service_address="10.0.0.5:50060")
    )
    copy = Job.from_create(original.to_dict())
    assert copy.title == original.title
    assert copy.service_name == original.service_name
    assert copy.method_name == original.method_name
    assert copy.parameters == original.parameters
    assert copy.scheduled_time == original.scheduled_time
    assert copy.recurrence_rule == original.recurrence_rule
    assert copy.end_time == original.end_time
    assert copy.service_address == original.service_address


def test_to_dict_includes_set_optional_fields():
    job = Job.from_create(_create())
    job.error_message = "boom"
    job.result = '{"ok":true}'
    job.executed_at = parse_iso8601("2024-03-15T10:31:00Z")
    data = job.to_dict()
    assert data["error_message"] == "boom"
    assert data["result"] == '{"ok":true}'
    assert data["executed_at"] == "2024-03-15T10:31:00Z"


def test_filter_date_range_is_half_open():
    job = Job.from_create(_create())
    assert matches_filter(job, JobFilter(start_date="2024-03-15T10:30:00Z"))
    assert not matches_filter(job, JobFilter(start_date="2024-03-15T10:30:01Z"))
    assert not matches_filter(job, JobFilter(end_date="2024-03-15T10:30:00Z"))
    assert matches_filter(job, JobFilter(end_date="2024-03-15T10:30:01Z"))


def test_filter_by_service_and_status():
    job = Job.from_create(_create())
    assert matches_filter(job, JobFilter(service="climate"))
    assert not matches_filter(job, JobFilter(service="media"))
    assert matches_filter(job, JobFilter(status=JobStatus.PENDING))
    assert not matches_filter(job, JobFilter(status=JobStatus.FAILED))


def test_filter_excludes_completed_unless_asked():
    job = Job.from_create(_create())
    job.status = JobStatus.COMPLETED
    assert not matches_filter(job, JobFilter())
    assert matches_filter(job, JobFilter(include_completed=True))


def test_filter_with_bad_date_raises():
    with pytest.raises(ValueError):
        matches_filter(Job.from_create(_create()), JobFilter(start_date="soon"))


def _local(moment):
    return time.localtime(moment.timestamp())


@pytest.mark.parametrize("date", ["2024-03-15T10:30:00Z", "2024-12-31T23:00:00Z"])
def test_day_view(date):
    start, end = calendar_view_range(ViewType.DAY, date)
    reference = parse_iso8601(date)
    assert end - start == timedelta(hours=24)
    assert start <= reference < end
    assert (_local(start).tm_hour, _local(start).tm_min, _local(start).tm_sec) == (0, 0, 0)


@pytest.mark.parametrize("date", ["2024-03-15T10:30:00Z", "2024-03-17T12:00:00Z"])
def test_week_view_starts_on_monday(date):
    start, end = calendar_view_range(ViewType.WEEK, date)
    assert end - start == timedelta(days=7)
    assert start <= parse_iso8601(date) < end
    assert _local(start).tm_wday == 0


@pytest.mark.parametrize("date", ["2024-02-15T12:00:00Z", "2024-12-15T12:00:00Z"])
def test_month_view_spans_calendar_month(date):
    start, end = calendar_view_range(ViewType.MONTH, date)
    assert start <= parse_iso8601(date) < end
    assert _local(start).tm_mday == 1
    assert _local(end).tm_mday == 1
    assert _local(start).tm_mon == _local(parse_iso8601(date)).tm_mon


def test_unknown_view_defaults_to_day():
    date = "2024-03-15T10:30:00Z"
    assert calendar_view_range(7, date) == calendar_view_range(ViewType.DAY, date)