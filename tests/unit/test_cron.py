import pytest

from flowline.clock import from_iso, to_iso
from flowline.errors import ValidationError
from flowline.scheduler import (
    binding_cron,
    check_trigger_config,
    describe,
    frequency_to_cron,
    next_fire_after,
    next_fire_times,
    parse_cron,
)

# 2024-01-01 is a Monday
MONDAY = from_iso("2024-01-01T00:00:00Z")


def _next(expression, after, timezone="UTC"):
    return to_iso(next_fire_after(expression, timezone, from_iso(after)))


@pytest.mark.parametrize(
    "expression, after, expected",
    [
        ("0 9 * * 1", "2024-01-01T00:00:00Z", "2024-01-01T09:00:00.000Z"),
        ("0 9 * * 0", "2024-01-01T00:00:00Z", "2024-01-07T09:00:00.000Z"),
        ("0 9 * * 7", "2024-01-01T00:00:00Z", "2024-01-07T09:00:00.000Z"),
        ("0 9 * * 0-2", "2024-01-02T09:00:00Z", "2024-01-07T09:00:00.000Z"),
        ("0 9 * * 1-5", "2024-01-05T09:00:00Z", "2024-01-08T09:00:00.000Z"),
        ("0 9 * * mon,wed", "2024-01-01T09:00:00Z", "2024-01-03T09:00:00.000Z"),
        ("*/15 * * * *", "2024-01-01T00:07:00Z", "2024-01-01T00:15:00.000Z"),
        ("0 0 1 */3 *", "2024-01-01T00:00:00Z", "2024-04-01T00:00:00.000Z"),
    ],
)
def test_next_fire_after(expression, after, expected):
    assert _next(expression, after) == expected


def test_next_fire_is_strictly_after():
    assert next_fire_after("0 * * * *", "UTC", MONDAY) == MONDAY + 3_600_000


def test_timezones_follow_daylight_saving():
    assert _next("0 8 * * *", "2024-01-01T00:00:00Z", "Europe/Berlin") == "2024-01-01T07:00:00.000Z"
    assert _next("0 8 * * *", "2024-07-01T00:00:00Z", "Europe/Berlin") == "2024-07-01T06:00:00.000Z"


def test_next_fire_times():
    times = next_fire_times("0 * * * *", count=3, after_ms=MONDAY)
    assert [to_iso(t) for t in times] == [
        "2024-01-01T01:00:00.000Z",
        "2024-01-01T02:00:00.000Z",
        "2024-01-01T03:00:00.000Z",
    ]


@pytest.mark.parametrize("expression", ["* * * *", "61 * * * *", "* 25 * * *", "* * * * funday", "every day"])
def test_invalid_cron(expression):
    with pytest.raises(ValidationError):
        parse_cron(expression)


def test_unknown_timezone():
    with pytest.raises(ValidationError):
        parse_cron("* * * * *", "Mars/Olympus_Mons")


@pytest.mark.parametrize(
    "frequency, kwargs, expected",
    [
        ("daily", {"run_at": "08:30"}, "30 8 * * *"),
        ("weekly", {}, "0 9 * * 1"),
        ("weekly", {"day_of_week": 5}, "0 9 * * 5"),
        ("monthly", {"day_of_month": 15}, "0 9 15 * *"),
        ("quarterly", {}, "0 9 1 1,4,7,10 *"),
        ("yearly", {"run_at": "00:00"}, "0 0 1 1 *"),
    ],
)
def test_frequency_presets(frequency, kwargs, expected):
    assert frequency_to_cron(frequency, **kwargs) == expected


@pytest.mark.parametrize("frequency, run_at", [("hourly", "09:00"), ("daily", "25:00"), ("daily", "9am")])
def test_bad_frequency(frequency, run_at):
    with pytest.raises(ValidationError):
        frequency_to_cron(frequency, run_at)


@pytest.mark.parametrize(
    "expression, text",
    [
        ("* * * * *", "Every minute"),
        ("0 9 * * 1-5", "Weekdays at 09:00"),
        ("*/15 * * * *", "Every 15 minutes"),
        ("30 */2 * * *", "Every 2 hours at minute 30"),
        ("0 9 * * 1", "At 09:00, on Monday"),
        ("0 6 1 * *", "At 06:00, on day 1 of the month"),
        ("15 8 * * *", "At 08:15 every day"),
        ("nonsense", "Invalid cron expression"),
    ],
)
def test_describe(expression, text):
    assert describe(expression) == text


def test_trigger_config():
    assert binding_cron({"cron": "0 9 * * *"}) == "0 9 * * *"
    assert binding_cron({"frequency": "weekly", "runAt": "07:15", "dayOfWeek": 3}) == "15 7 * * 3"
    with pytest.raises(ValidationError):
        binding_cron({})

    assert check_trigger_config({"cron": "0 9 * * *", "catchUpPolicy": "all"}) == []
    assert len(check_trigger_config({"cron": "0 9 * * *", "timezone": "Nowhere/Land"})) == 1
    assert len(check_trigger_config({"catchUpPolicy": "twice"})) == 2


@pytest.mark.parametrize(
    "expression, after, expected",
    [
        # day of month OR day of week when both are restricted
        ("0 0 1 * 1", "2025-01-01T12:00:00Z", "2025-01-06T00:00:00.000Z"),
        ("0 0 1 * 1", "2025-01-27T12:00:00Z", "2025-02-01T00:00:00.000Z"),
        # a starred field keeps the other one in charge
        ("0 0 1-7 * *", "2025-01-01T12:00:00Z", "2025-01-02T00:00:00.000Z"),
        ("0 0 * * */2", "2025-01-06T12:00:00Z", "2025-01-07T00:00:00.000Z"),
        ("0 0 * * */2", "2025-01-09T12:00:00Z", "2025-01-11T00:00:00.000Z"),
        ("0 0 * * 0-6/2", "2025-01-11T12:00:00Z", "2025-01-12T00:00:00.000Z"),
        ("0 0 * * 1-5/2", "2025-01-06T12:00:00Z", "2025-01-08T00:00:00.000Z"),
        ("0 0 * * 5,7", "2025-01-10T12:00:00Z", "2025-01-12T00:00:00.000Z"),
    ],
)
def test_crontab_weekday_semantics(expression, after, expected):
    assert _next(expression, after) == expected


@pytest.mark.parametrize("expression", ["0 0 * * 3-1", "0 0 * * 8", "0 0 * * */0", "0 0 * * 1-"])
def test_invalid_weekdays(expression):
    with pytest.raises(ValidationError):
        parse_cron(expression)
