"""
Backup restore and sync tests.

Run with: python -m pytest tests/test_backup.py -v
"""

import subprocess

import pytest

import backup
from conftest import write_json


def set_markers(settings, backup_marker, local_marker):
    settings.backup_dir.mkdir(parents=True, exist_ok=True)
    settings.config_dir.mkdir(parents=True, exist_ok=True)
    if backup_marker is not None:
        (settings.backup_dir / ".last-sync").write_text(backup_marker + "\n")
    if local_marker is not None:
        (settings.config_dir / ".last-sync").write_text(local_marker + "\n")


class TestMarkers:
    """Sync marker parsing."""

    def test_parse_zulu_timestamp(self):
        parsed = backup.parse_marker("2024-01-01T00:00:00Z")
        assert parsed.year == 2024 and parsed.utcoffset().total_seconds() == 0

    def test_missing_marker_is_epoch(self):
        assert backup.parse_marker(None) == backup.EPOCH
        assert backup.parse_marker("") == backup.EPOCH

    def test_garbage_marker_is_epoch(self, capsys):
        assert backup.parse_marker("not a date") == backup.EPOCH
        assert "Unparseable" in capsys.readouterr().err

    def test_naive_timestamp_is_utc(self):
        assert backup.parse_marker("2024-01-01T00:00:00") == backup.parse_marker("2024-01-01T00:00:00+00:00")


class TestShouldRestore:
    """Restore happens iff the backup marker is strictly newer."""

    @pytest.mark.parametrize(
        "backup_marker, local_marker, expected",
        [
            ("2024-01-02T00:00:00+00:00", "2024-01-01T00:00:00+00:00", True),
            ("2024-01-01T00:00:00+00:00", "2024-01-01T00:00:00+00:00", False),
            ("2024-01-01T00:00:00Z", "2024-01-02T00:00:00Z", False),
            ("2024-01-01T00:00:00Z", None, True),
            ("2024-01-01T00:00:00Z", "garbage", True),
            (None, None, False),
            (None, "2024-01-01T00:00:00Z", False),
            ("garbage", "2024-01-01T00:00:00Z", False),
        ],
    )
    def test_marker_ordering(self, settings, backup_marker, local_marker, expected):
        set_markers(settings, backup_marker, local_marker)
        assert backup.should_restore(settings.backup_dir, settings.config_dir) is expected

    def test_timezone_aware_comparison(self, settings):
        # 01:00+02:00 is 23:00Z the previous day
        set_markers(settings, "2024-01-02T01:00:00+02:00", "2024-01-01T23:30:00Z")
        assert backup.should_restore(settings.backup_dir, settings.config_dir) is False


class TestRestore:
    """Restoring trees from the backup store."""

    def populate_backup(self, settings, marker="2024-01-01T00:00:00Z"):
        write_json(settings.backup_dir / "openclaw" / "openclaw.json", {"gateway": {"port": 1}})
        (settings.backup_dir / "workspace").mkdir(parents=True)
        (settings.backup_dir / "workspace" / "MEMORY.md").write_text("remember")
        (settings.backup_dir / "skills" / "weather").mkdir(parents=True)
        (settings.backup_dir / "skills" / "weather" / "SKILL.md").write_text("skill")
        (settings.backup_dir / ".last-sync").write_text(marker)

    def restore(self, settings):
        return backup.restore_from_backup(
            settings.backup_dir,
            settings.config_dir,
            settings.workspace_dir,
            settings.skills_dir,
            timeout=10,
        )

    def test_not_mounted(self, settings, capsys):
        assert self.restore(settings) == {"config": "skipped", "workspace": "skipped", "skills": "skipped"}
        assert "not mounted" in capsys.readouterr().out

    def test_full_restore(self, settings):
        self.populate_backup(settings)
        report = self.restore(settings)

        assert report == {"config": "restored", "workspace": "restored", "skills": "restored"}
        assert (settings.config_dir / "openclaw.json").exists()
        assert (settings.config_dir / ".last-sync").read_text() == "2024-01-01T00:00:00Z"
        assert (settings.workspace_dir / "MEMORY.md").read_text() == "remember"
        assert (settings.skills_dir / "weather" / "SKILL.md").read_text() == "skill"

    def test_no_restore_when_local_is_same(self, settings):
        self.populate_backup(settings)
        settings.config_dir.mkdir(parents=True)
        (settings.config_dir / ".last-sync").write_text("2024-01-01T00:00:00Z")
        report = self.restore(settings)
        assert set(report.values()) == {"skipped"}
        assert not (settings.config_dir / "openclaw.json").exists()

    def test_empty_workspace_backup_is_skipped(self, settings):
        write_json(settings.backup_dir / "openclaw" / "openclaw.json", {})
        (settings.backup_dir / "workspace").mkdir(parents=True)
        (settings.backup_dir / ".last-sync").write_text("2024-01-01T00:00:00Z")
        report = self.restore(settings)
        assert report["config"] == "restored"
        assert report["workspace"] == "skipped"

    def test_timeout_is_a_warning_and_restore_continues(self, settings, monkeypatch, capsys):
        self.populate_backup(settings)
        real_run = subprocess.run

        def fake_run(cmd, **kwargs):
            if "openclaw/." in cmd[2]:
                raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))
            return real_run(cmd, **kwargs)

        monkeypatch.setattr(backup.subprocess, "run", fake_run)
        report = self.restore(settings)

        assert report == {"config": "failed", "workspace": "restored", "skills": "restored"}
        assert not (settings.config_dir / ".last-sync").exists()
        err = capsys.readouterr().err
        assert "timed out" in err
        assert "Config restore timed out or failed" in err

    def test_copy_failure_is_a_warning(self, settings, monkeypatch, capsys):
        self.populate_backup(settings)
        monkeypatch.setattr(
            backup.subprocess,
            "run",
            lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 1, "", "cp: read error"),
        )
        report = self.restore(settings)
        assert set(report.values()) == {"failed"}
        assert "cp: read error" in capsys.readouterr().err


class TestSync:
    """Local -> backup sync."""

    def sync(self, settings):
        return backup.sync_to_backup(
            settings.backup_dir,
            settings.config_dir,
            settings.workspace_dir,
            settings.skills_dir,
            timeout=5,
        )

    def test_not_configured(self, settings):
        result = self.sync(settings)
        assert not result.success
        assert "not configured" in result.error

    def test_refuses_without_config(self, settings):
        settings.backup_dir.mkdir(parents=True)
        result = self.sync(settings)
        assert not result.success
        assert result.error == "Sync aborted: no config file found"

    def test_success_writes_marker(self, settings, monkeypatch):
        settings.backup_dir.mkdir(parents=True)
        write_json(settings.config_dir / "openclaw.json", {})
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            return subprocess.CompletedProcess(cmd, 0, "", "")

        monkeypatch.setattr(backup.subprocess, "run", fake_run)
        result = self.sync(settings)

        assert result.success
        assert len(calls) == 3
        assert "--exclude=*.lock" in calls[0]
        assert "--exclude=skills" in calls[1]
        assert calls[2][-1] == f"{settings.backup_dir / 'skills'}/"
        marker = (settings.backup_dir / ".last-sync").read_text().strip()
        assert marker == result.last_sync
        assert backup.parse_marker(marker) > backup.EPOCH

    def test_rsync_failure(self, settings, monkeypatch):
        settings.backup_dir.mkdir(parents=True)
        write_json(settings.config_dir / "openclaw.json", {})
        monkeypatch.setattr(
            backup.subprocess,
            "run",
            lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 23, "", "rsync: permission denied"),
        )
        result = self.sync(settings)
        assert not result.success
        assert result.details == "rsync: permission denied"
        assert not (settings.backup_dir / ".last-sync").exists()

    def test_status(self, settings):
        assert backup.backup_status(settings.backup_dir)["configured"] is False
        settings.backup_dir.mkdir(parents=True)
        (settings.backup_dir / ".last-sync").write_text("2024-01-01T00:00:00Z\n")
        status = backup.backup_status(settings.backup_dir)
        assert status == {**status, "configured": True, "lastSync": "2024-01-01T00:00:00Z"}
