import json
from pathlib import Path

import pytest

import scrub
from bootstrap import BootstrapSettings


@pytest.fixture(autouse=True)
def isolated_scrub_rules(tmp_path, monkeypatch):
    """Never read scrub rules from the host."""
    monkeypatch.setattr(scrub, "SCRUB_RULES_PATH", tmp_path / "scrub_rules.json")


@pytest.fixture
def settings(tmp_path) -> BootstrapSettings:
    """Bootstrap settings pointed at a scratch filesystem, port that nothing listens on."""
    return BootstrapSettings(
        config_dir=tmp_path / "root" / ".openclaw",
        backup_dir=tmp_path / "data" / "openclaw",
        workspace_dir=tmp_path / "root" / "clawd",
        skills_dir=tmp_path / "root" / "clawd" / "skills",
        lock_path=tmp_path / "tmp" / "start-openclaw.lock",
        gateway_host="127.0.0.1",
        gateway_port=18789,
        probe_timeout=0.1,
        restore_timeout=10,
        onboard_timeout=10,
    )


def write_json(path: Path, data: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
