from __future__ import annotations

import pytest

from vibe.config import Config


class FakeClock:
    """Manually advanced clock for timing-dependent tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path) -> Config:
    state_dir = tmp_path / "claude-activity"
    state_dir.mkdir()
    return Config.from_dict(
        {
            "storage": {"base_dir": str(tmp_path / "vibe")},
            "activity": {"state_dir": str(state_dir)},
            "plans": {"claude_dir": str(tmp_path / "claude")},
            "refresh": {"failure_warning_threshold": 2, "max_workers": 2},
        }
    )
