from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import pytest

from claude_pings import cli, paths
from claude_pings.cli import main
from claude_pings.stats import StatsStore


def test_paths_follow_home_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(paths.HOME_ENV_VAR, str(tmp_path))
    assert paths.claude_dir() == tmp_path
    assert paths.trigger_file_path() == tmp_path / "claude-indicator-trigger"
    assert paths.stats_file_path() == tmp_path / "claude-pings-stats.json"


def test_paths_default_to_home_claude_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(paths.HOME_ENV_VAR, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("USERPROFILE", str(tmp_path))
    assert paths.claude_dir() == tmp_path / ".claude"


def test_stats_command_prints_summary(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "stats.json"
    with StatsStore(path) as store:
        store.record_alert("a1")
        store.record_click("a1")

    assert main(["stats", "--stats", str(path)]) == 0

    out = capsys.readouterr().out
    assert "Today:         1 alerts, 1 clicked, 0 dismissed" in out
    assert "Streak:        1 days" in out
    assert "Last 7 days:" in out


def test_stats_command_prints_raw_document(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "stats.json"
    with StatsStore(path) as store:
        store.record_alert("a1")

    assert main(["stats", "--stats", str(path), "--json"]) == 0

    document = json.loads(capsys.readouterr().out)
    assert document["allTimeAlerts"] == 1


def test_stats_command_uses_home_override(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv(paths.HOME_ENV_VAR, str(tmp_path))

    assert main(["stats", "--json"]) == 0

    assert json.loads(capsys.readouterr().out)["days"] == {}
    assert not (tmp_path / "claude-pings-stats.json").exists()


def test_missing_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([]) == 1
    assert "usage:" in capsys.readouterr().out


def test_watch_command_prints_and_records_pids(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    trigger = tmp_path / "trigger"
    stats_path = tmp_path / "stats.json"
    recorded: list[str] = []
    original_record_alert = StatsStore.record_alert

    def record_alert(self: StatsStore, alert_id: str) -> None:
        original_record_alert(self, alert_id)
        recorded.append(alert_id)

    def fake_sleep(seconds: float) -> None:
        with trigger.open("ab") as handle:
            handle.write(b"4242\n")
        deadline = time.monotonic() + 5.0
        while not recorded and time.monotonic() < deadline:
            threading.Event().wait(0.01)
        raise KeyboardInterrupt

    monkeypatch.setattr(StatsStore, "record_alert", record_alert)
    monkeypatch.setattr(cli.time, "sleep", fake_sleep)

    code = main(
        ["watch", "--trigger", str(trigger), "--stats", str(stats_path), "--record", "--interval", "0.02"]
    )

    assert code == 130
    assert recorded == ["pid-4242-1"]
    assert "pid 4242" in capsys.readouterr().out
    assert json.loads(stats_path.read_text(encoding="utf-8"))["allTimeAlerts"] == 1


def test_watch_command_fails_when_trigger_cannot_be_created(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")

    assert main(["watch", "--trigger", str(blocker / "trigger")]) == 1
