from __future__ import annotations

import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

CONFIG_DIR = Path.home() / ".config" / "vibe"
CONFIG_FILE = CONFIG_DIR / "config.toml"

DEFAULT_BASE_DIR = Path.home() / ".vibe"
DEFAULT_STATE_DIR = DEFAULT_BASE_DIR / "claude-activity"
DEFAULT_CLAUDE_DIR = Path.home() / ".claude"

DEFAULT_CONFIG = """\
[storage]
# Where the task database and log file live
base_dir = "~/.vibe"

[activity]
# Directory the Claude Code statusline script writes activity files to
state_dir = "~/.vibe/claude-activity"
# Seconds since the last file update during which a session counts as thinking
thinking_threshold = 5
# Seconds after which a quiet session counts as idle
waiting_threshold = 120
# How often the activity directory is scanned for changed files
watch_interval = 0.5

[pull_requests]
# Seconds to remember that a branch has no PR before asking GitHub again
no_pr_ttl = 120
# Seconds before an open PR is fetched again to catch merges and closes
refresh_ttl = 60
# Fetch all PRs in one GraphQL query instead of one `gh pr view` per branch
# batch = false

[refresh]
interval = 10
# Consecutive failures of a source before a warning is shown
failure_warning_threshold = 3
max_workers = 4

[linear]
# Environment variable holding the Linear API key.
# Defaults to <PROJECT>_LINEAR_API_KEY, e.g. VIBE_KANBAN_LINEAR_API_KEY.
# api_key_env = "LINEAR_API_KEY"

[plans]
# Claude Code data directory holding projects/ session logs and plans/
claude_dir = "~/.claude"
"""


@dataclass
class Config:
    base_dir: Path
    state_dir: Path  # activity status files
    thinking_threshold: float  # seconds
    waiting_threshold: float  # seconds
    watch_interval: float  # seconds between activity dir scans
    no_pr_ttl: float  # seconds
    pr_refresh_ttl: float  # seconds before an open PR is fetched again
    pr_batch: bool  # one GraphQL query for all PRs
    refresh_interval: float  # seconds
    failure_warning_threshold: int
    max_workers: int
    linear_api_key_env: str | None = None
    claude_dir: Path = DEFAULT_CLAUDE_DIR

    @classmethod
    def load(cls) -> Config:
        if CONFIG_FILE.exists():
            with open(CONFIG_FILE, "rb") as f:
                data = tomllib.load(f)
        else:
            data = {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        storage = data.get("storage", {})
        base_dir = Path(storage.get("base_dir", str(DEFAULT_BASE_DIR))).expanduser()

        activity = data.get("activity", {})
        state_dir = Path(
            activity.get("state_dir", str(DEFAULT_STATE_DIR))
        ).expanduser()
        thinking_threshold = float(activity.get("thinking_threshold", 5))
        waiting_threshold = float(activity.get("waiting_threshold", 120))
        watch_interval = float(activity.get("watch_interval", 0.5))

        pr_section = data.get("pull_requests", {})
        no_pr_ttl = float(pr_section.get("no_pr_ttl", 120))
        pr_refresh_ttl = float(pr_section.get("refresh_ttl", 60))
        pr_batch = bool(pr_section.get("batch", False))

        refresh = data.get("refresh", {})
        refresh_interval = float(refresh.get("interval", 10))
        failure_warning_threshold = int(refresh.get("failure_warning_threshold", 3))
        max_workers = int(refresh.get("max_workers", 4))

        linear = data.get("linear", {})
        linear_api_key_env = linear.get("api_key_env")

        plans = data.get("plans", {})
        claude_dir = Path(plans.get("claude_dir", str(DEFAULT_CLAUDE_DIR))).expanduser()

        config = cls(
            base_dir=base_dir,
            state_dir=state_dir,
            thinking_threshold=thinking_threshold,
            waiting_threshold=waiting_threshold,
            watch_interval=watch_interval,
            no_pr_ttl=no_pr_ttl,
            pr_refresh_ttl=pr_refresh_ttl,
            pr_batch=pr_batch,
            refresh_interval=refresh_interval,
            failure_warning_threshold=failure_warning_threshold,
            max_workers=max_workers,
            linear_api_key_env=linear_api_key_env,
            claude_dir=claude_dir,
        )
        _validate(config)
        return config


def _validate(config: Config) -> None:
    """Raise ValueError on settings the engine cannot work with."""
    for name in (
        "thinking_threshold",
        "waiting_threshold",
        "watch_interval",
        "no_pr_ttl",
        "pr_refresh_ttl",
        "refresh_interval",
    ):
        if getattr(config, name) <= 0:
            raise ValueError(f"'{name}' must be positive.")

    if config.thinking_threshold >= config.waiting_threshold:
        raise ValueError(
            "'thinking_threshold' must be smaller than 'waiting_threshold' "
            f"({config.thinking_threshold} >= {config.waiting_threshold})."
        )
    if config.failure_warning_threshold < 1:
        raise ValueError("'failure_warning_threshold' must be at least 1.")
    if config.max_workers < 1:
        raise ValueError("'max_workers' must be at least 1.")


def get_config() -> Config:
    return Config.load()


def ensure_config() -> Path:
    """Create default config file if it doesn't exist. Returns config path."""
    if not CONFIG_FILE.exists():
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        CONFIG_FILE.write_text(DEFAULT_CONFIG)
    return CONFIG_FILE
