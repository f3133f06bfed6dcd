"""Tests for playback entities and the session state machine."""

from __future__ import annotations

import pytest

from anil.domain.entities import PositionSample, SessionState, TrackingPolicy
from anil.domain.entities.playback import can_transition


class TestPositionSample:
    def test_fraction(self) -> None:
        assert PositionSample(elapsed=30.0, duration=120.0).fraction == 0.25

    def test_fraction_unknown_without_duration(self) -> None:
        assert PositionSample(elapsed=30.0, duration=None).fraction is None
        assert PositionSample(elapsed=30.0, duration=0.0).fraction is None

    def test_fraction_is_clamped(self) -> None:
        assert PositionSample(elapsed=130.0, duration=120.0).fraction == 1.0
        assert PositionSample(elapsed=-1.0, duration=120.0).fraction == 0.0


class TestSessionTransitions:
    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (SessionState.STARTING, SessionState.PLAYING),
            (SessionState.STARTING, SessionState.FAILED),
            (SessionState.PLAYING, SessionState.PAUSED),
            (SessionState.PAUSED, SessionState.PLAYING),
            (SessionState.PAUSED, SessionState.ENDED),
        ],
    )
    def test_allowed(self, current: SessionState, target: SessionState) -> None:
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (SessionState.STARTING, SessionState.PAUSED),
            (SessionState.PLAYING, SessionState.FAILED),
            (SessionState.ENDED, SessionState.PLAYING),
            (SessionState.FAILED, SessionState.ENDED),
        ],
    )
    def test_rejected(self, current: SessionState, target: SessionState) -> None:
        assert not can_transition(current, target)

    def test_terminal_states(self) -> None:
        assert SessionState.ENDED.is_terminal
        assert SessionState.FAILED.is_terminal
        assert not SessionState.PAUSED.is_terminal


class TestTrackingPolicy:
    def test_default_threshold(self) -> None:
        assert TrackingPolicy().completion_threshold == 85.0

    @pytest.mark.parametrize("value", [0, -5, 100.5])
    def test_rejects_out_of_range(self, value: float) -> None:
        with pytest.raises(ValueError):
            TrackingPolicy(completion_threshold=value)
