"""Tests for lockstep.pipeline."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from lockstep.config import OrchestrationConfig
from lockstep.errors import CommandError, LevelFailure, LockstepError, PreflightError
from lockstep.graph import build_graph, discover_members
from lockstep.models import ApprovalStatus, BumpKind, ReleasePlan
from lockstep.orchestrator import OrchestrationResult
from lockstep.pipeline import apply_release, outdated_dependencies, release_commit_message
from lockstep.planner import approve, set_bump, set_selected
from lockstep.projects import HandlerRegistry
from lockstep.store import PlanStore
from lockstep.versions import is_calendar_version

from conftest import FakeGitFactory, make_repo_plan


@pytest.fixture
def eco_root(ecosystem: Callable[[dict[str, list[str]]], Path]) -> Path:
    return ecosystem({"base": [], "app": ["base>=1.0"]})


@pytest.fixture
def saved(
    eco_root: Path,
    store: PlanStore,
    make_plan: Callable[..., ReleasePlan],
    fake_git: FakeGitFactory,
) -> ReleasePlan:
    """An approved base → app plan, saved to the store."""
    plan = make_plan(
        eco_root,
        [["base"], ["app"]],
        {
            "base": make_repo_plan("v1.0.0", "v1.0.1"),
            "app": make_repo_plan("v1.0.0", "v1.1.0"),
        },
        parent_version="v2025.10.18.1",
        parent_current_version="v2025.10.18",
    )
    store.save(plan)
    fake_git(eco_root).local_tags = {"v2025.10.18"}
    return plan


def apply(store: PlanStore, fake_git: FakeGitFactory, **config: object) -> OrchestrationResult:
    return apply_release(
        OrchestrationConfig(**config),
        store,
        git_factory=fake_git,
        ci=MagicMock(),
        index=MagicMock(),
    )


def test_release_commit_message_sorted(make_plan: Callable[..., ReleasePlan]) -> None:
    plan = make_plan(
        Path("/eco"),
        [],
        {"zeta": make_repo_plan("v1.0.0", "v1.0.1"), "alpha": make_repo_plan("v0.1.0", "v0.2.0")},
    )
    assert (
        release_commit_message(plan, ["zeta", "alpha"])
        == "chore: release components (alpha@v0.2.0, zeta@v1.0.1)"
    )


class TestApplyRelease:
    def test_full_release(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        result = apply(store, fake_git)

        assert result.released == ["base", "app"]
        assert not store.exists()

        root_writes = fake_git(eco_root).writes
        assert root_writes[:3] == [
            ("add", "repos/base"),
            ("add", "repos/app"),
            ("commit", "-m", "chore: release components (app@v1.1.0, base@v1.0.1)"),
        ]
        tag = root_writes[3]
        assert tag[0] == "tag" and is_calendar_version(tag[2])
        assert root_writes[4:] == [
            ("push", "origin", "main"),
            ("push", "origin", f"refs/tags/{tag[2]}"),
        ]

    def test_preflight_wrong_branch(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        fake_git(eco_root / "repos" / "app").branch = "feature"

        with pytest.raises(PreflightError, match="app"):
            apply(store, fake_git)

        assert store.load() == saved
        assert fake_git.events == []

    def test_preflight_dirty_repository(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        fake_git(eco_root / "repos" / "base").untracked = ["scratch.py"]
        with pytest.raises(PreflightError, match="base"):
            apply(store, fake_git)

    def test_preflight_allows_changelog_edits(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        fake_git(eco_root / "repos" / "base").changed = ["CHANGELOG.md"]
        assert apply(store, fake_git).released == ["base", "app"]

    def test_preflight_parent_tag_exists(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        root = fake_git(eco_root)
        root.local_tags.add("v2025.10.18.1")
        root.remote_tags.add("v2025.10.18.1")
        with pytest.raises(PreflightError, match="ecosystem"):
            apply(store, fake_git)

    def test_force_skips_preflight(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        fake_git(eco_root / "repos" / "app").branch = "feature"
        assert apply(store, fake_git, force=True).released == ["base", "app"]

    def test_level_failure_keeps_plan(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        fake_git(eco_root / "repos" / "base").fail_on = lambda args: args[0] == "tag"

        with pytest.raises(LevelFailure):
            apply(store, fake_git)

        kept = store.load()
        assert kept.repos["base"].last_failed_operation == "TagCreated"
        assert fake_git(eco_root).writes == []
        assert fake_git(eco_root / "repos" / "app").writes == []

    def test_installs_approved_changelogs(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        plan = store.load()
        for name in ("base", "app"):
            staged = store.staging_path(name)
            staged.parent.mkdir(parents=True)
            staged.write_text(f"## {plan.repos[name].next_version} (2025-10-18)\n")
            plan.repos[name].changelog_path = str(staged)
        plan.repos["app"].status = ApprovalStatus.PENDING
        store.save(plan)
        existing = eco_root / "repos" / "base" / "CHANGELOG.md"
        existing.write_text("## v1.0.0 (2025-01-01)\n")

        apply(store, fake_git)

        assert existing.read_text() == "## v1.0.1 (2025-10-18)\n\n## v1.0.0 (2025-01-01)\n"
        assert not (eco_root / "repos" / "app" / "CHANGELOG.md").exists()

    def test_push_option(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        base = fake_git(eco_root / "repos" / "base")
        base.ahead = 2
        apply(store, fake_git, push=True)
        assert base.writes[0] == ("push", "origin", "main")

    def test_dry_run_keeps_plan(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        apply(store, fake_git, dry_run=True)
        assert store.load() == saved

    def test_skip_parent(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        apply(store, fake_git, skip_parent=True)
        assert fake_git(eco_root).writes == []
        assert not store.exists()

    def test_nothing_selected(
        self, saved: ReleasePlan, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        plan = store.load()
        for repo in plan.repos.values():
            repo.selected = False
        store.save(plan)
        with pytest.raises(LockstepError, match="No repositories are selected"):
            apply(store, fake_git)

    def test_resumed_apply_installs_changelog_once(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        """A run that failed before the changelog was pushed does not duplicate it."""
        plan = store.load()
        staged = store.staging_path("base")
        staged.parent.mkdir(parents=True)
        staged.write_text("## v1.0.1 (2025-10-18)\n\n- fix\n")
        plan.repos["base"].changelog_path = str(staged)
        store.save(plan)
        base = fake_git(eco_root / "repos" / "base")
        base.fail_on = lambda args: args[0] == "push"

        with pytest.raises(LevelFailure):
            apply(store, fake_git)
        assert store.load().repos["base"].last_failed_operation == "DependencyPushed"

        base.fail_on = None
        assert apply(store, fake_git).released == ["base", "app"]

        changelog = (eco_root / "repos" / "base" / "CHANGELOG.md").read_text()
        assert changelog.count("## v1.0.1") == 1

    def test_releases_repo_selected_during_review(
        self,
        saved: ReleasePlan,
        eco_root: Path,
        ecosystem: Callable[[dict[str, list[str]]], Path],
        store: PlanStore,
        fake_git: FakeGitFactory,
    ) -> None:
        """A repo without changes at plan time still gets a level once selected."""
        ecosystem({"lib": []})
        plan = store.load()
        plan.repos["lib"] = make_repo_plan(
            "v2.0.0", "v2.0.0", status=ApprovalStatus.NONE, selected_bump=BumpKind.NONE
        )
        store.save(plan)
        set_bump(store, "lib", BumpKind.PATCH)
        set_selected(store, "lib", True)
        approve(store, "lib")

        result = apply(store, fake_git)

        assert sorted(result.released) == ["app", "base", "lib"]
        lib = fake_git(eco_root / "repos" / "lib")
        assert ("push", "origin", "refs/tags/v2.0.1") in lib.writes
        assert not store.exists()

    def test_commits_moved_member_references(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        root = fake_git(eco_root)
        root.changed = ["repos/base", "README.md"]

        apply(store, fake_git)

        assert root.writes[:2] == [
            ("add", "repos/base"),
            ("commit", "-m", "chore: update member references for release (base)"),
        ]

    def test_dry_run_leaves_member_references(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        root = fake_git(eco_root)
        root.changed = ["repos/base"]
        apply(store, fake_git, dry_run=True)
        assert not any("member references" in " ".join(w) for w in root.writes)

    def test_reuses_unpushed_parent_tag(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        root = fake_git(eco_root)
        root.local_tags.add("v2025.10.18.1")

        apply(store, fake_git)

        assert not any(w[0] == "tag" for w in root.writes)
        assert root.writes[-2:] == [
            ("push", "origin", "main"),
            ("push", "origin", "refs/tags/v2025.10.18.1"),
        ]

    def test_parent_tag_kept_after_failed_push(
        self, saved: ReleasePlan, eco_root: Path, store: PlanStore, fake_git: FakeGitFactory
    ) -> None:
        root = fake_git(eco_root)
        root.fail_on = lambda args: args == ("push", "origin", "main")

        with pytest.raises(CommandError):
            apply(store, fake_git)
        tagged = store.load().parent_version
        assert tagged in root.local_tags

        root.fail_on = None
        result = apply(store, fake_git)

        assert result.already_released == ["base", "app"]
        assert [w for w in root.writes if w[0] == "tag"] == [
            ("tag", "-a", tagged, "-m", f"Release {tagged}")
        ]
        assert root.writes[-1] == ("push", "origin", f"refs/tags/{tagged}")
        assert not store.exists()


class TestOutdatedDependencies:
    def test_reports_stale_pins(
        self,
        ecosystem: Callable[[dict[str, list[str]]], Path],
        make_plan: Callable[..., ReleasePlan],
        fake_git: FakeGitFactory,
    ) -> None:
        root = ecosystem({"base": [], "app": ["base==0.9.0"], "tool": ["base==1.0.0"]})
        plan = make_plan(root, [["base"]], {"base": make_repo_plan("v1.0.0", "v1.0.1")})
        graph = build_graph(discover_members(root))

        assert outdated_dependencies(plan, graph, HandlerRegistry(), fake_git) == {
            "app": ["base: 0.9.0 → v1.0.0"]
        }

    def test_falls_back_to_latest_tag(
        self,
        ecosystem: Callable[[dict[str, list[str]]], Path],
        make_plan: Callable[..., ReleasePlan],
        fake_git: FakeGitFactory,
    ) -> None:
        """Dependencies outside the plan are compared with their latest tag."""
        root = ecosystem({"base": [], "app": ["base==1.0.0", "requests==2.0"]})
        fake_git(root / "repos" / "base").last_tag = "v1.2.0"
        plan = make_plan(root, [["app"]], {"app": make_repo_plan("v1.0.0", "v1.0.1")})
        graph = build_graph(discover_members(root))

        assert outdated_dependencies(plan, graph, HandlerRegistry(), fake_git) == {
            "app": ["base: 1.0.0 → v1.2.0"]
        }
