from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from tenantcore.core.clock import as_utc
from tenantcore.core.errors import InvalidRequestError, SequenceExhaustedError
from tenantcore.domain.models import ResetMode


DEFAULT_PADDING_LENGTH = 6
DEFAULT_FORMAT_TEMPLATE = "{prefix}-{number}"
MAX_PADDING_LENGTH = 32


@dataclass(frozen=True)
class SequenceState:
    # Snapshot of the counter columns needed to compute the next value.
    current_value: int
    min_value: int
    max_value: int | None
    step: int
    reset_mode: str
    reset_value: int
    last_reset_at: datetime | None

    @classmethod
    def of(cls, sequence: Any) -> SequenceState:
        return cls(
            current_value=int(sequence.current_value),
            min_value=int(sequence.min_value),
            max_value=None if sequence.max_value is None else int(sequence.max_value),
            step=int(sequence.step),
            reset_mode=str(sequence.reset_mode),
            reset_value=int(sequence.reset_value),
            last_reset_at=sequence.last_reset_at,
        )


@dataclass(frozen=True)
class SequenceAdvance:
    value: int
    reset: bool
    clamped: bool


def should_auto_reset(reset_mode: str, last_reset_at: datetime | None, now: datetime) -> bool:
    """Whether the period that contained ``last_reset_at`` has ended at ``now``.

    Calendar boundaries are evaluated in UTC. A sequence that was never reset
    resets on first use unless its mode is NEVER.
    """
    mode = ResetMode(reset_mode)
    if mode == ResetMode.NEVER:
        return False
    last = as_utc(last_reset_at)
    if last is None:
        return True
    current = as_utc(now)
    if mode == ResetMode.DAILY:
        return last.date() != current.date()
    if mode == ResetMode.WEEKLY:
        # ISO weeks: (iso_year, week) so the first days of January can still belong to the prior year.
        return last.isocalendar()[:2] != current.isocalendar()[:2]
    if mode == ResetMode.MONTHLY:
        return (last.year, last.month) != (current.year, current.month)
    return last.year != current.year


def compute_next(state: SequenceState, now: datetime) -> SequenceAdvance:
    reset = should_auto_reset(state.reset_mode, state.last_reset_at, now)
    base = state.reset_value if reset else state.current_value
    candidate = base + state.step
    clamped = False
    if candidate < state.min_value:
        candidate = state.min_value
        clamped = True
    if state.max_value is not None and candidate > state.max_value:
        raise SequenceExhaustedError(f"Sequence exceeded max value {state.max_value}")
    return SequenceAdvance(value=candidate, reset=reset, clamped=clamped)


def render_number(
    value: int,
    *,
    format_template: str,
    prefix: str | None,
    suffix: str | None,
    padding_length: int,
) -> str:
    # Plain token substitution; other braces in the template are left untouched.
    number = str(value).zfill(max(0, padding_length))
    rendered = format_template.replace("{prefix}", prefix or "")
    rendered = rendered.replace("{suffix}", suffix or "")
    return rendered.replace("{number}", number)


def validate_configuration(values: Mapping[str, Any]) -> None:
    # Checks the merged configuration that would be persisted.
    step = values.get("step")
    if step is None or int(step) < 1:
        raise InvalidRequestError("step must be at least 1")
    min_value = int(values.get("min_value", 1))
    max_value = values.get("max_value")
    if max_value is not None and int(max_value) < min_value:
        raise InvalidRequestError("max_value must be greater than or equal to min_value")
    padding = int(values.get("padding_length", DEFAULT_PADDING_LENGTH))
    if padding < 0 or padding > MAX_PADDING_LENGTH:
        raise InvalidRequestError(f"padding_length must be between 0 and {MAX_PADDING_LENGTH}")
    try:
        ResetMode(values.get("reset_mode", ResetMode.NEVER.value))
    except ValueError as exc:
        raise InvalidRequestError(f"Unsupported reset_mode: {values.get('reset_mode')}") from exc
    template = values.get("format_template") or DEFAULT_FORMAT_TEMPLATE
    if "{number}" not in template:
        raise InvalidRequestError("format_template must contain {number}")


def check_within_bounds(value: int, *, min_value: int, max_value: int | None) -> None:
    if value < min_value:
        raise InvalidRequestError(f"Value {value} is below min_value {min_value}")
    if max_value is not None and value > max_value:
        raise InvalidRequestError(f"Value {value} is above max_value {max_value}")
