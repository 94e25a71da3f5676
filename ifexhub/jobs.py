"""Scheduled jobs: the job record, time handling, filters and calendar ranges."""

from __future__ import annotations

import enum
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

log = logging.getLogger(__name__)

_FORMAT = "%Y-%m-%dT%H:%M:%S"

_RECURRENCE_STEPS = {
    "daily": timedelta(hours=24),
    "weekly": timedelta(hours=24 * 7),
    "hourly": timedelta(hours=1),
    "minutely": timedelta(minutes=1),
}


class JobStatus(enum.IntEnum):
    """Execution state of a job."""

    PENDING = 0
    RUNNING = 1
    COMPLETED = 2
    FAILED = 3


class ViewType(enum.IntEnum):
    """Span of a calendar view."""

    DAY = 0
    WEEK = 1
    MONTH = 2


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso8601(text: str) -> datetime:
    """Parse ``YYYY-MM-DDTHH:MM:SS`` with an optional ``Z`` as a UTC time."""
    body = text[:-1] if text.endswith("Z") else text
    try:
        parsed = datetime.strptime(body, _FORMAT)
    except ValueError:
        raise ValueError(f"Failed to parse ISO 8601 datetime: {text}") from None
    return parsed.replace(tzinfo=timezone.utc)


def format_iso8601(moment: datetime) -> str:
    """Format a time as ``YYYY-MM-DDTHH:MM:SSZ`` in UTC; naive times count as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(_FORMAT + "Z")


@dataclass(frozen=True)
class JobFilter:
    """Criteria for listing jobs; empty fields match everything."""

    start_date: str = ""
    end_date: str = ""
    service: str = ""
    status: JobStatus | None = None
    include_completed: bool = False


@dataclass
class Job:
    """A call of a service method scheduled for a point in time."""

    id: str = ""
    title: str = ""
    service_name: str = ""
    method_name: str = ""
    parameters: Any = None
    service_address: str = ""
    scheduled_time: datetime = field(default_factory=_now)
    recurrence_rule: str = ""
    end_time: datetime | None = None
    next_run_time: datetime | None = None
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    executed_at: datetime | None = None
    error_message: str | None = None
    result: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Wire form of the job; optional fields appear only when set."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "service": self.service_name,
            "method": self.method_name,
            "parameters": json.dumps(self.parameters, separators=(",", ":")),
            "scheduled_time": format_iso8601(self.scheduled_time),
        }
        if self.recurrence_rule:
            data["recurrence_rule"] = self.recurrence_rule
        if self.end_time is not None:
            data["end_time"] = format_iso8601(self.end_time)
        data["status"] = JobStatus(self.status).name
        data["created_at"] = format_iso8601(self.created_at)
        data["updated_at"] = format_iso8601(self.updated_at)
        if self.executed_at is not None:
            data["executed_at"] = format_iso8601(self.executed_at)
        if self.next_run_time is not None:
            data["next_run_time"] = format_iso8601(self.next_run_time)
        if self.error_message is not None:
            data["error_message"] = self.error_message
        if self.result is not None:
            data["result"] = self.result
        if self.service_address:
            data["service_address"] = self.service_address
        return data

    @classmethod
    def from_create(cls, job_create: Mapping[str, Any]) -> Job:
        """Build a pending job from a creation request; the id is left empty."""
        parameters: Any = None
        raw_parameters = job_create.get("parameters") or ""
        if raw_parameters:
            try:
                parameters = json.loads(raw_parameters)
            except json.JSONDecodeError as exc:
                log.error("Failed to parse job parameters: %s", exc)
                parameters = {}

        end_time_text = job_create.get("end_time") or ""
        now = _now()
        return cls(
            title=job_create.get("title") or "",
            service_name=job_create.get("service") or "",
            method_name=job_create.get("method") or "",
            parameters=parameters,
            service_address=job_create.get("service_address") or "",
            scheduled_time=parse_iso8601(job_create.get("scheduled_time") or ""),
            recurrence_rule=job_create.get("recurrence_rule") or "",
            end_time=parse_iso8601(end_time_text) if end_time_text else None,
            created_at=now,
            updated_at=now,
        )


def next_run_time(job: Job, after: datetime) -> datetime | None:
    """Next occurrence of a recurring job after a time, or None if it does not recur."""
    step = _RECURRENCE_STEPS.get(job.recurrence_rule)
    return after + step if step is not None else None


def matches_filter(job: Job, job_filter: JobFilter) -> bool:
    """Whether a job satisfies every criterion of a filter."""
    if job_filter.start_date and job.scheduled_time < parse_iso8601(job_filter.start_date):
        return False
    if job_filter.end_date and job.scheduled_time >= parse_iso8601(job_filter.end_date):
        return False
    if job_filter.service and job.service_name != job_filter.service:
        return False
    if job_filter.status is not None and job.status != job_filter.status:
        return False
    if not job_filter.include_completed and job.status == JobStatus.COMPLETED:
        return False
    return True


def _local_midnight(year: int, month: int, day: int) -> datetime:
    stamp = time.mktime((year, month, day, 0, 0, 0, 0, 0, -1))
    return datetime.fromtimestamp(stamp, timezone.utc)


def calendar_view_range(view_type: ViewType | int, date: str) -> tuple[datetime, datetime]:
    """Start and end (exclusive) of the local-time day, week or month holding a date."""
    reference = parse_iso8601(date)
    local = time.localtime(reference.timestamp())
    start_of_day = _local_midnight(local.tm_year, local.tm_mon, local.tm_mday)

    if view_type == ViewType.WEEK:
        # tm_wday counts from Monday as 0.
        start_of_week = start_of_day - timedelta(hours=24 * local.tm_wday)
        return start_of_week, start_of_week + timedelta(hours=24 * 7)

    if view_type == ViewType.MONTH:
        start_of_month = _local_midnight(local.tm_year, local.tm_mon, 1)
        year, month = local.tm_year, local.tm_mon + 1
        if month > 12:
            year, month = year + 1, 1
        return start_of_month, _local_midnight(year, month, 1)

    return start_of_day, start_of_day + timedelta(hours=24)