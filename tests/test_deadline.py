from __future__ import annotations

from datetime import datetime, timedelta, timezone

from gpu_reservation.deadline import (
    DEFAULT_SOURCE,
    DeadlineResolver,
    ReservationDeadline,
    parse_end_time,
    resolve_end_time,
)


def test_env_var_wins_over_file_and_alias(make_context) -> None:
    ctx = make_context(
        env={
            "RESERVATION_END_TIME": "2026-10-18T14:00:00Z",
            "EXTRA_ENV_RESERVATION_END_TIME": "2026-10-18T20:00:00Z",
        },
        durable="RESERVATION_END_TIME=2026-10-18T18:00:00Z\n",
    )
    assert resolve_end_time(ctx) == ("2026-10-18T14:00:00Z", "env")


def test_durable_file_used_when_env_var_empty(make_context) -> None:
    ctx = make_context(
        env={"RESERVATION_END_TIME": "  ", "EXTRA_ENV_RESERVATION_END_TIME": "2026-10-18T20:00:00Z"},
        durable='RESERVATION_END_TIME="2026-10-18T18:00:00Z"\n',
    )
    assert resolve_end_time(ctx) == ("2026-10-18T18:00:00Z", "durable_env")


def test_alias_preferred_over_default(make_context, start) -> None:
    ctx = make_context(env={"EXTRA_ENV_RESERVATION_END_TIME": "2026-10-18T13:30:00Z"})
    deadline = DeadlineResolver().resolve(ctx, now=start)
    assert deadline.source == "alias"
    assert deadline.end_time == datetime(2026, 10, 18, 13, 30, tzinfo=timezone.utc)
    assert not deadline.is_default


def test_first_match_wins_when_primary_and_alias_disagree(make_context, start) -> None:
    ctx = make_context(env={
        "RESERVATION_END_TIME": "2026-10-18T13:00:00Z",
        "EXTRA_ENV_RESERVATION_END_TIME": "2026-10-18T15:00:00Z",
    })
    deadline = DeadlineResolver().resolve(ctx, now=start)
    assert deadline.source == "env"
    assert deadline.end_time.hour == 13


def test_missing_end_time_falls_back_to_two_hours(make_context, start) -> None:
    deadline = DeadlineResolver().resolve(make_context(), now=start)
    assert deadline.source == DEFAULT_SOURCE
    assert deadline.end_time == start + timedelta(hours=2)
    assert deadline.effective_fire_time == start + timedelta(hours=2, minutes=5)


def test_unparseable_end_time_falls_back_to_default(make_context, start) -> None:
    for raw in ("tomorrow-ish", "2026-13-45T99:00:00", "@not-a-number"):
        ctx = make_context(env={"RESERVATION_END_TIME": raw})
        deadline = DeadlineResolver().resolve(ctx, now=start)
        assert deadline.is_default, raw
        assert deadline.effective_fire_time == start + timedelta(hours=2, minutes=5)


def test_fallback_pins_default_deadline(make_context, start) -> None:
    pinned = start - timedelta(minutes=1)
    deadline = DeadlineResolver().resolve(make_context(), now=start, fallback=pinned)
    assert deadline.is_default
    assert deadline.end_time == pinned


def test_effective_fire_time_adds_five_minutes(start) -> None:
    for minutes in (1, 10, 59, 600):
        end = start + timedelta(minutes=minutes)
        assert ReservationDeadline(end, "env").effective_fire_time == end + timedelta(minutes=5)


def test_past_deadline_is_detected(start) -> None:
    assert ReservationDeadline(start - timedelta(seconds=1), "env").is_past(start)
    assert ReservationDeadline(start, "env").is_past(start)
    assert not ReservationDeadline(start + timedelta(seconds=1), "env").is_past(start)


def test_parse_end_time_formats() -> None:
    utc = timezone.utc
    assert parse_end_time("2026-10-18T14:00:00Z") == datetime(2026, 10, 18, 14, tzinfo=utc)
    assert parse_end_time("2026-10-18T16:00:00+02:00") == datetime(2026, 10, 18, 14, tzinfo=utc)
    assert parse_end_time("@1792324800") == datetime.fromtimestamp(1792324800, tz=utc)
    assert parse_end_time("1792324800") == datetime.fromtimestamp(1792324800, tz=utc)
    assert parse_end_time("'2026-10-18 14:00:00+00:00'") == datetime(2026, 10, 18, 14, tzinfo=utc)


def test_parse_naive_end_time_is_local() -> None:
    parsed = parse_end_time("2026/10/18 14:00:00")
    assert parsed is not None
    assert parsed.tzinfo is not None
    assert parsed == datetime(2026, 10, 18, 14, 0, 0).astimezone()


def test_parse_end_time_rejects_garbage() -> None:
    assert parse_end_time("") is None
    assert parse_end_time("next tuesday") is None
