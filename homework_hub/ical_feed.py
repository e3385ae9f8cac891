from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any

import requests
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from homework_hub.errors import FeedFetchError, MissingParameter
from homework_hub.expander import MAX_SPAN_DAYS, expand_all, filter_from
from homework_hub.models import (
    UNTITLED_TASK,
    CalendarEvent,
    FeedConfig,
    TaskCandidate,
    date_to_datetime,
    local_midnight,
)

logger = logging.getLogger(__name__)


def _normalize_feed_url(url: str | None) -> str:
    text = str(url or "").strip()
    if not text:
        raise MissingParameter()
    if text.lower().startswith("webcal://"):
        text = "https://" + text[len("webcal://") :]
    return text


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, (datetime, date)):
        return date_to_datetime(value)
    return None


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _text(vevent: ICEvent, name: str) -> str:
    value = vevent.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _categories(vevent: ICEvent) -> list[str]:
    raw = vevent.get("CATEGORIES")
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else [raw]
    labels: list[str] = []
    for item in items:
        cats = getattr(item, "cats", None)
        if cats is None:
            cats = str(item).split(",")
        labels.extend(str(cat).strip() for cat in cats if str(cat).strip())
    return labels


def parse_vevent(vevent: ICEvent) -> CalendarEvent:
    start = _coerce_datetime(_decoded(vevent, "DTSTART"))
    end = _coerce_datetime(_decoded(vevent, "DTEND"))
    if end is None and start is not None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
    if start is not None and end is not None and end < start:
        end = start
    return CalendarEvent(
        title=_text(vevent, "SUMMARY") or UNTITLED_TASK,
        start=start,
        end=end,
        description=_text(vevent, "DESCRIPTION"),
        location=_text(vevent, "LOCATION"),
        categories=_categories(vevent),
        external_id=_text(vevent, "UID"),
    )


def parse_feed(raw_data: Any, *, now: datetime | None = None) -> list[CalendarEvent]:
    """Parse raw iCal text into events that end (or start) today or later."""
    try:
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    except Exception as exc:
        raise FeedFetchError(f"Invalid calendar data: {exc}") from exc

    cutoff = local_midnight(now)
    events: list[CalendarEvent] = []
    for component in calendar_obj.walk():
        if component.name != "VEVENT":
            continue
        try:
            event = parse_vevent(component)
        except Exception as exc:
            logger.warning("Skipping unreadable VEVENT %s: %s", _text(component, "UID"), exc)
            continue
        anchor = event.end or event.start
        if anchor is None or anchor < cutoff:
            continue
        events.append(event)
    return events


def fetch_events(
    url: str | None,
    *,
    now: datetime | None = None,
    timeout: int = 20,
    user_agent: str = "",
    session: requests.Session | None = None,
) -> list[CalendarEvent]:
    feed_url = _normalize_feed_url(url)
    http = session or requests
    headers = {"Accept": "text/calendar, */*"}
    if user_agent:
        headers["User-Agent"] = user_agent
    logger.info("Fetching iCal feed from %s", feed_url)
    try:
        response = http.get(feed_url, headers=headers, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FeedFetchError(str(exc)) from exc
    events = parse_feed(response.content, now=now)
    logger.info("Parsed %d upcoming events from feed", len(events))
    return events


def build_candidates(
    url: str | None,
    *,
    now: datetime | None = None,
    timeout: int = 20,
    user_agent: str = "",
    max_span_days: int = MAX_SPAN_DAYS,
    session: requests.Session | None = None,
) -> list[TaskCandidate]:
    events = fetch_events(url, now=now, timeout=timeout, user_agent=user_agent, session=session)
    candidates = expand_all(events, max_days=max_span_days)
    return filter_from(candidates, local_midnight(now).date())


class FeedSource:
    """Fetches and expands a feed in-process."""

    def __init__(self, config: FeedConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session

    def fetch_candidates(self, url: str, *, now: datetime | None = None) -> list[TaskCandidate]:
        return build_candidates(
            url,
            now=now,
            timeout=self.config.timeout_seconds,
            user_agent=self.config.user_agent,
            max_span_days=self.config.max_span_days,
            session=self.session,
        )


class ParseEndpointClient:
    """Delegates fetching and expansion to a remote ``/api/parse-ical`` endpoint."""

    def __init__(self, config: FeedConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session

    def fetch_candidates(self, url: str, *, now: datetime | None = None) -> list[TaskCandidate]:
        feed_url = str(url or "").strip()
        if not feed_url:
            raise MissingParameter()
        http = self.session or requests
        try:
            response = http.post(
                self.config.parse_endpoint,
                json={"url": feed_url},
                headers={"Content-Type": "application/json"},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise FeedFetchError(f"Failed to fetch calendar: {exc}") from exc
        raw_events = payload.get("events") if isinstance(payload, dict) else None
        if not isinstance(raw_events, list):
            raise FeedFetchError("Parse endpoint response has no events list.")
        return [TaskCandidate.from_dict(item) for item in raw_events if isinstance(item, dict)]


def feed_source_for(config: FeedConfig) -> FeedSource | ParseEndpointClient:
    if config.parse_endpoint:
        return ParseEndpointClient(config)
    return FeedSource(config)
