from __future__ import annotations

import pytest

from hyperwa.connection.backoff import BackoffPolicy
from hyperwa.connection.events import ClosedEvent, CloseReason, DisconnectReason, classify_close
from hyperwa.settings import BackoffSettings


def test_default_sequence() -> None:
    p = BackoffPolicy()
    assert [p.delay_for(a) for a in range(7)] == [1, 2, 4, 8, 16, 30, 30]


def test_cap_holds_for_long_outages() -> None:
    p = BackoffPolicy(base_s=0.5, max_s=10)
    assert p.delay_for(10_000) == 10


def test_negative_attempt_rejected() -> None:
    with pytest.raises(ValueError):
        BackoffPolicy().delay_for(-1)


def test_jitter_only_shortens_delay() -> None:
    p = BackoffPolicy(base_s=1, max_s=30, jitter=0.5)
    for attempt in range(8):
        d = p.delay_for(attempt)
        full = min(2**attempt, 30)
        assert full * 0.5 <= d <= full


def test_from_settings() -> None:
    p = BackoffPolicy.from_settings(BackoffSettings(base_s=2, max_s=8, jitter=0.1))
    assert (p.base_s, p.max_s, p.jitter) == (2, 8, 0.1)


@pytest.mark.parametrize(
    "code",
    [
        DisconnectReason.CONNECTION_CLOSED,
        DisconnectReason.CONNECTION_LOST,
        DisconnectReason.CONNECTION_REPLACED,
        DisconnectReason.BAD_SESSION,
        DisconnectReason.RESTART_REQUIRED,
        DisconnectReason.MULTIDEVICE_MISMATCH,
        DisconnectReason.FORBIDDEN,
        DisconnectReason.UNAVAILABLE_SERVICE,
        None,
        999,
    ],
)
def test_only_logged_out_is_terminal(code) -> None:
    assert classify_close(ClosedEvent(status_code=code)) is CloseReason.TRANSIENT


def test_logged_out_classification() -> None:
    assert classify_close(ClosedEvent(status_code=401)) is CloseReason.LOGGED_OUT
