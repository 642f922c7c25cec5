from __future__ import annotations

import os
from pathlib import Path

TRIGGER_FILE_NAME = "claude-indicator-trigger"
STATS_FILE_NAME = "claude-pings-stats.json"
HOME_ENV_VAR = "CLAUDE_PINGS_HOME"


def claude_dir() -> Path:
    """Return the directory holding the trigger and stats files.

    ``$CLAUDE_PINGS_HOME`` wins when set, otherwise ``~/.claude``.
    """
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".claude"


def trigger_file_path() -> Path:
    return claude_dir() / TRIGGER_FILE_NAME


def stats_file_path() -> Path:
    return claude_dir() / STATS_FILE_NAME
