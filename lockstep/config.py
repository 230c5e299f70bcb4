"""Run configuration and state locations.

Behaviour switches are explicit, immutable values handed to the planner,
orchestrator and pipeline; nothing reads them from module globals.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

from .models import ReleaseType

STATE_DIR_ENV = "LOCKSTEP_STATE_DIR"
CHANGELOG_CMD_ENV = "LOCKSTEP_CHANGELOG_CMD"


class OrchestrationConfig(BaseModel):
    """Switches for applying a release plan.

    Attributes:
        dry_run: Print write operations instead of running them; never
            persists or clears the plan.
        force: Bypass preflight checks.
        push: Push selected repositories' branches before releasing.
        skip_ci: Do not wait for CI workflows.
        resume: Report repositories retried from a failed stage. Every
            run resumes from the persisted progress flags regardless.
        skip_parent: Do not commit, tag or push the ecosystem parent.
        max_workers: Concurrent tasks per level; None means one per repo.
        deadline_seconds: Overall deadline for the run, or None.
    """

    model_config = {"frozen": True}

    dry_run: bool = False
    force: bool = False
    push: bool = False
    skip_ci: bool = False
    resume: bool = False
    skip_parent: bool = False
    max_workers: int | None = Field(default=None, ge=1)
    main_branch: str = "main"
    rc_branch: str = "rc-nightly"
    deadline_seconds: float | None = Field(default=None, gt=0)


class PlanOptions(BaseModel):
    """Inputs to a planning pass."""

    model_config = {"frozen": True}

    release_type: ReleaseType = ReleaseType.FULL
    repos: tuple[str, ...] = ()
    with_deps: bool = False
    major: tuple[str, ...] = ()
    minor: tuple[str, ...] = ()
    patch: tuple[str, ...] = ()
    force_increment: bool = False
    skip_parent: bool = False
    llm_changelog: bool = False


def state_dir() -> Path:
    """Per-user state directory.

    $LOCKSTEP_STATE_DIR, else $XDG_STATE_HOME/lockstep, else
    ~/.local/state/lockstep.
    """
    explicit = os.environ.get(STATE_DIR_ENV)
    if explicit:
        return Path(explicit)
    xdg = os.environ.get("XDG_STATE_HOME")
    if xdg:
        return Path(xdg) / "lockstep"
    return Path.home() / ".local" / "state" / "lockstep"


def plan_path() -> Path:
    return state_dir() / "release" / "release_plan.json"


def staging_dir() -> Path:
    return state_dir() / "release" / "staging"
