from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Iterable

from homework_hub.models import CalendarEvent, TaskCandidate, utc_midnight


MAX_SPAN_DAYS = 365


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _candidate(event: CalendarEvent, day: date) -> TaskCandidate:
    return TaskCandidate(
        task_name=event.title,
        due_date=day.isoformat(),
        description=event.description,
        location=event.location,
        categories=list(event.categories),
        external_id=event.external_id,
    )


def expand(event: CalendarEvent, max_days: int = MAX_SPAN_DAYS) -> list[TaskCandidate]:
    """Produce one candidate per UTC day the event covers.

    A day is covered when its midnight is strictly before ``end``, so an event
    ending exactly at midnight does not spill into that day. Every event with a
    start yields at least one candidate (its own start day), and the walk stops
    after ``max_days`` iterations.
    """
    if event.start is None:
        return []
    start = _to_utc(event.start)
    end = _to_utc(event.end) if event.end is not None else start
    if end < start:
        end = start

    candidates: list[TaskCandidate] = []
    day = utc_midnight(start)
    for _ in range(max(1, int(max_days))):
        if day >= end:
            break
        candidates.append(_candidate(event, day.date()))
        day += timedelta(days=1)

    if not candidates:
        candidates.append(_candidate(event, start.date()))
    return candidates


def expand_all(events: Iterable[CalendarEvent], max_days: int = MAX_SPAN_DAYS) -> list[TaskCandidate]:
    output: list[TaskCandidate] = []
    for event in events:
        output.extend(expand(event, max_days=max_days))
    return output


def filter_from(candidates: Iterable[TaskCandidate], today: date) -> list[TaskCandidate]:
    """Drop candidates due before ``today`` (leading days of long events)."""
    cutoff = today.isoformat()
    return [candidate for candidate in candidates if candidate.due_date >= cutoff]
