"""Hardcoded default configuration values."""

from __future__ import annotations

from typing import Any

DEFAULT_CONFIG: dict[str, Any] = {
    "environment": "dev",
    "stream": {
        "quality": "1080",
        "translation_type": "sub",
        "completion_threshold": 85.0,
        "resume_min_fraction": 0.05,
    },
    "providers": {
        "order": ["allanime"],
        "timeout_seconds": 15.0,
        "call_timeout_seconds": 60.0,
        "max_retries": 2,
        "backoff_base_seconds": 0.5,
        "max_backoff_seconds": 8.0,
        "prefer_lower_on_tie": True,
        "breaker_failure_threshold": 3,
        "breaker_cooldown_seconds": 300.0,
        "search_min_score": 0.5,
        "user_agent": None,  # None = built-in desktop browser UA
    },
    "player": {
        "command": ["mpv"],
        "extra_args": [],
        "ipc_connect_timeout_seconds": 5.0,
        "ipc_request_timeout_seconds": 2.0,
        "poll_interval_seconds": 1.0,
        "max_stale_polls": 3,
        "load_timeout_seconds": 30.0,
        "terminate_timeout_seconds": 3.0,
        "next_episode_key": "Shift+N",
        "previous_episode_key": "Shift+P",
        "socket_dir": None,  # None = system temp dir
    },
    "storage": {
        "dir": "~/.local/share/anil",
    },
    "logging": {
        "level": "WARNING",
        "format": None,  # Derived from environment in schema.py
    },
}
