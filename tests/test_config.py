"""Tests for lockstep.config."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from lockstep.config import OrchestrationConfig, plan_path, staging_dir, state_dir


class TestStateDir:
    def test_explicit(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOCKSTEP_STATE_DIR", str(tmp_path))
        assert state_dir() == tmp_path
        assert plan_path() == tmp_path / "release" / "release_plan.json"
        assert staging_dir() == tmp_path / "release" / "staging"

    def test_xdg(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("LOCKSTEP_STATE_DIR", raising=False)
        monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path))
        assert state_dir() == tmp_path / "lockstep"

    def test_home_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("LOCKSTEP_STATE_DIR", raising=False)
        monkeypatch.delenv("XDG_STATE_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert state_dir() == tmp_path / ".local" / "state" / "lockstep"


class TestOrchestrationConfig:
    def test_defaults(self) -> None:
        config = OrchestrationConfig()
        assert not config.dry_run
        assert config.main_branch == "main"
        assert config.rc_branch == "rc-nightly"
        assert config.max_workers is None

    def test_rejects_zero_workers(self) -> None:
        with pytest.raises(ValidationError):
            OrchestrationConfig(max_workers=0)

    def test_frozen(self) -> None:
        config = OrchestrationConfig()
        with pytest.raises(ValidationError):
            config.dry_run = True  # type: ignore[misc]
