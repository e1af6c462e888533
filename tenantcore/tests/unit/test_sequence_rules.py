from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tenantcore.core.errors import InvalidRequestError, SequenceExhaustedError
from tenantcore.domain.sequences import (
    SequenceState,
    check_within_bounds,
    compute_next,
    render_number,
    should_auto_reset,
    validate_configuration,
)


def _at(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _state(**overrides) -> SequenceState:
    values = {
        "current_value": 5,
        "min_value": 1,
        "max_value": None,
        "step": 1,
        "reset_mode": "NEVER",
        "reset_value": 0,
        "last_reset_at": None,
    }
    values.update(overrides)
    return SequenceState(**values)


def test_never_mode_does_not_reset() -> None:
    assert not should_auto_reset("NEVER", None, _at(2026, 1, 1))
    assert not should_auto_reset("NEVER", _at(2020, 1, 1), _at(2026, 1, 1))


def test_sequence_without_last_reset_resets_on_first_use() -> None:
    assert should_auto_reset("DAILY", None, _at(2026, 10, 18))
    assert not should_auto_reset("NEVER", None, _at(2026, 10, 18))


def test_daily_boundary_is_utc_midnight() -> None:
    last = _at(2026, 10, 18, 23, 59)
    assert not should_auto_reset("DAILY", last, _at(2026, 10, 18, 0, 1))
    assert should_auto_reset("DAILY", last, _at(2026, 10, 19, 0, 0))


def test_naive_timestamps_are_treated_as_utc() -> None:
    assert not should_auto_reset("DAILY", datetime(2026, 10, 18, 1, 0), _at(2026, 10, 18, 22, 0))


def test_weekly_uses_iso_weeks_across_year_end() -> None:
    # 2026-12-31 and 2027-01-01 both fall in ISO week 53 of 2026.
    assert not should_auto_reset("WEEKLY", _at(2026, 12, 31), _at(2027, 1, 1))
    assert should_auto_reset("WEEKLY", _at(2026, 12, 31), _at(2027, 1, 4))


def test_monthly_and_yearly_boundaries() -> None:
    assert not should_auto_reset("MONTHLY", _at(2026, 10, 1), _at(2026, 10, 31))
    assert should_auto_reset("MONTHLY", _at(2026, 10, 31), _at(2026, 11, 1))
    assert should_auto_reset("MONTHLY", _at(2025, 10, 5), _at(2026, 10, 5))
    assert not should_auto_reset("YEARLY", _at(2026, 1, 1), _at(2026, 12, 31))
    assert should_auto_reset("YEARLY", _at(2026, 12, 31), _at(2027, 1, 1))


def test_compute_next_steps_from_current_value() -> None:
    advance = compute_next(_state(current_value=5, step=2), _at(2026, 10, 18))

    assert advance.value == 7
    assert not advance.reset
    assert not advance.clamped


def test_compute_next_restarts_from_reset_value() -> None:
    advance = compute_next(
        _state(current_value=41, reset_mode="DAILY", reset_value=0, last_reset_at=_at(2026, 10, 17)),
        _at(2026, 10, 18),
    )

    assert advance.value == 1
    assert advance.reset


def test_compute_next_clamps_to_min_value() -> None:
    advance = compute_next(_state(current_value=0, min_value=100), _at(2026, 10, 18))

    assert advance.value == 100
    assert advance.clamped


def test_compute_next_refuses_to_pass_max_value() -> None:
    state = _state(current_value=9, max_value=10)

    assert compute_next(state, _at(2026, 10, 18)).value == 10
    with pytest.raises(SequenceExhaustedError):
        compute_next(_state(current_value=10, max_value=10), _at(2026, 10, 18))


def test_render_number_pads_and_substitutes_tokens() -> None:
    rendered = render_number(
        6, format_template="{prefix}-{number}{suffix}", prefix="INV", suffix="/A", padding_length=6
    )

    assert rendered == "INV-000006/A"
    assert render_number(1234567, format_template="{number}", prefix=None, suffix=None, padding_length=3) == "1234567"
    assert render_number(7, format_template="{year}-{number}", prefix="", suffix=None, padding_length=2) == "{year}-07"


def test_validate_configuration_rejects_bad_values() -> None:
    base = {"step": 1, "min_value": 1, "max_value": None, "padding_length": 6, "reset_mode": "NEVER"}
    validate_configuration(base)

    for overrides in (
        {"step": 0},
        {"max_value": 0},
        {"padding_length": 33},
        {"reset_mode": "HOURLY"},
        {"format_template": "{prefix}"},
    ):
        with pytest.raises(InvalidRequestError):
            validate_configuration({**base, **overrides})


def test_check_within_bounds() -> None:
    check_within_bounds(5, min_value=1, max_value=10)
    with pytest.raises(InvalidRequestError):
        check_within_bounds(0, min_value=1, max_value=None)
    with pytest.raises(InvalidRequestError):
        check_within_bounds(11, min_value=1, max_value=10)
