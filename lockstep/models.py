"""Data models for lockstep.

These Pydantic models represent the release plan: the durable state a
planning pass creates, a review step mutates, and the orchestrator consumes.
They round-trip losslessly through the JSON plan file.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from .git import GitStatus


class BumpKind(str, Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"
    NONE = "-"


class ReleaseType(str, Enum):
    FULL = "full"
    RC = "rc"


class ApprovalStatus(str, Enum):
    PENDING = "Pending Review"
    APPROVED = "Approved"
    NONE = "-"


class RepoReleasePlan(BaseModel):
    """Release state of one member repository.

    Attributes:
        current_version: Latest tag (semantic or calendar), "v0.0.0" if none.
        suggested_bump: Bump derived from commit analysis or the changelog
            generator.
        selected_bump: Bump the release will actually use.
        next_version: Tag to create; equals current_version when there is
            nothing to release.
        selected: Whether the repository participates in this release.
        status: Review status.
        changelog_pushed: Progress flag: changelog commit is on the remote.
        ci_passed: Progress flag: CI passed for the commit to be tagged.
        tag_pushed: Progress flag: the release tag is on the remote.
        last_failed_operation: Name of the stage that last failed, or "".

    The git snapshot fields are captured at plan time for display only; the
    release state machine never reads them.
    """

    current_version: str
    suggested_bump: BumpKind = BumpKind.PATCH
    suggestion_reasoning: str = ""
    selected_bump: BumpKind = BumpKind.PATCH
    next_version: str
    changelog_path: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    selected: bool = False
    commits_since_last_tag: int = 0

    changelog_pushed: bool = False
    ci_passed: bool = False
    tag_pushed: bool = False
    last_failed_operation: str = ""

    branch: str = ""
    is_dirty: bool = False
    has_upstream: bool = False
    ahead_count: int = 0
    behind_count: int = 0
    modified_count: int = 0
    staged_count: int = 0
    untracked_count: int = 0

    @property
    def has_changes(self) -> bool:
        return self.next_version != self.current_version

    def apply_git_status(self, status: GitStatus) -> None:
        for field, value in status.model_dump().items():
            setattr(self, field, value)


class ReleasePlan(BaseModel):
    """Aggregate root persisted to the plan file.

    Attributes:
        created_at: When the planning pass ran (UTC).
        release_type: Full release or release candidate.
        root_dir: Ecosystem root directory.
        parent_version: Proposed calendar tag for the ecosystem parent, ""
            when the parent is skipped.
        parent_current_version: Parent's latest tag at plan time.
        release_levels: Levels of repository names; earlier levels first.
        repos: Repository name → RepoReleasePlan.
    """

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    release_type: ReleaseType = ReleaseType.FULL
    root_dir: str
    parent_version: str = ""
    parent_current_version: str = ""
    release_levels: list[list[str]] = Field(default_factory=list)
    repos: dict[str, RepoReleasePlan] = Field(default_factory=dict)

    def selected_repos(self) -> list[str]:
        """Selected repositories in release-level order."""
        ordered = [name for level in self.release_levels for name in level]
        ordered += [name for name in self.repos if name not in ordered]
        return [name for name in ordered if name in self.repos and self.repos[name].selected]
