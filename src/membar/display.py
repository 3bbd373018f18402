"""Display state and the "significant change" predicate."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from membar.errors import ChannelError, ProtocolError
from membar.models import FetchResult, PressureScore
from membar.scoring import score

# Overall score movement that warrants a re-render on its own
SIGNIFICANT_SCORE_DELTA = 2.0

ERROR_LABEL = "Error"
UNKNOWN_LABEL = "Unknown"

ZERO_SCORE = PressureScore(overall=0.0, memory_usage_percent=0.0, swap_usage_percent=0.0)


@dataclass(slots=True, frozen=True)
class DisplayState:
    """What the presentation layer currently shows."""

    pressure: str
    used: str
    swap: str
    score: PressureScore
    updated_at: datetime | None = None
    message: str = ""

    @property
    def degraded(self) -> bool:
        """Whether the state stands in for a failed fetch."""
        return self.pressure in (ERROR_LABEL, UNKNOWN_LABEL)


def _degraded_state(outcome: FetchResult) -> DisplayState:
    # Transport and protocol failures show "Error"; a service that could not
    # read the counters shows "Unknown"
    failed_transport = isinstance(outcome.error, (ChannelError, ProtocolError))
    label = ERROR_LABEL if failed_transport else UNKNOWN_LABEL
    return DisplayState(
        pressure=label,
        used=UNKNOWN_LABEL,
        swap=UNKNOWN_LABEL,
        score=ZERO_SCORE,
        message=str(outcome.error),
    )


def _shown(state: DisplayState) -> tuple[str, str, str]:
    return state.pressure, state.used, state.swap


def is_significant_change(previous: DisplayState | None, current: DisplayState) -> bool:
    """Whether `current` differs enough from `previous` to re-render."""
    if previous is None:
        return True
    if _shown(previous) != _shown(current):
        return True
    return abs(current.score.overall - previous.score.overall) > SIGNIFICANT_SCORE_DELTA


def next_display_state(
    previous: DisplayState | None, outcome: FetchResult
) -> tuple[DisplayState, bool]:
    """
    Fold one fetch outcome into the display state.

    Returns the new state and whether it differs enough to re-render. A
    failure replaces the shown values with an explicit degraded state, but
    repeating the same degraded state is not a change.
    """
    if outcome.error is not None or outcome.snapshot is None:
        degraded = _degraded_state(outcome)
        if previous is not None and _shown(previous) == _shown(degraded):
            return previous, False
        return degraded, True

    snapshot = outcome.snapshot
    current = DisplayState(
        pressure=snapshot.pressure.value,
        used=snapshot.used_display,
        swap=snapshot.swap_display,
        score=score(snapshot),
        updated_at=outcome.fetched_at,
    )
    return current, is_significant_change(previous, current)
