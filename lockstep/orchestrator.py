"""Parallel release orchestration.

Walks the plan's release levels in order. Within a level every selected
repository gets its own task, run concurrently, and each task drives its
repository through the release state machine:

    Start → [rc: BranchReset] → DependenciesUpdated → DependencyPushed
    → DependencyCIWaited → [full: ChangelogCommitted → ChangelogPushed
    → CIWaitedAfterChangelog] → TagCreated → TagPushed → [rc: BranchPushed]
    → ReleaseWorkflowWaited → ModuleAvailabilityWaited → Done

The plan is saved after every progress flag change, so a later run resumes
from the persisted flags instead of repeating remote side effects. A level
only starts once every task of the previous level has finished.
"""

from __future__ import annotations

import concurrent.futures
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from .ci import GitHubCI, PackageIndex
from .config import OrchestrationConfig
from .errors import CommandError, LevelFailure, LockstepError, StepFailure
from .git import Git
from .graph import DependencyGraph, RepositoryNode
from .models import ReleasePlan, ReleaseType, RepoReleasePlan
from .projects import HandlerRegistry
from .shell import CancelToken, echo, step, warn
from .store import PlanStore

DEPS_COMMIT_MESSAGE = "chore(deps): update ecosystem dependencies to released versions"
CHANGELOG_FILE = "CHANGELOG.md"


class ReleaseStage(str, Enum):
    START = "Start"
    BRANCH_RESET = "BranchReset"
    DEPENDENCIES_UPDATED = "DependenciesUpdated"
    DEPENDENCY_PUSHED = "DependencyPushed"
    DEPENDENCY_CI_WAITED = "DependencyCIWaited"
    CHANGELOG_COMMITTED = "ChangelogCommitted"
    CHANGELOG_PUSHED = "ChangelogPushed"
    CI_WAITED_AFTER_CHANGELOG = "CIWaitedAfterChangelog"
    TAG_CREATED = "TagCreated"
    TAG_PUSHED = "TagPushed"
    BRANCH_PUSHED = "BranchPushed"
    RELEASE_WORKFLOW_WAITED = "ReleaseWorkflowWaited"
    MODULE_AVAILABILITY_WAITED = "ModuleAvailabilityWaited"
    DONE = "Done"


STAGE_ORDER = list(ReleaseStage)

FULL_STAGES = [
    ReleaseStage.DEPENDENCIES_UPDATED,
    ReleaseStage.DEPENDENCY_PUSHED,
    ReleaseStage.DEPENDENCY_CI_WAITED,
    ReleaseStage.CHANGELOG_COMMITTED,
    ReleaseStage.CHANGELOG_PUSHED,
    ReleaseStage.CI_WAITED_AFTER_CHANGELOG,
    ReleaseStage.TAG_CREATED,
    ReleaseStage.TAG_PUSHED,
    ReleaseStage.RELEASE_WORKFLOW_WAITED,
    ReleaseStage.MODULE_AVAILABILITY_WAITED,
]

RC_STAGES = [
    ReleaseStage.BRANCH_RESET,
    ReleaseStage.DEPENDENCIES_UPDATED,
    ReleaseStage.DEPENDENCY_PUSHED,
    ReleaseStage.DEPENDENCY_CI_WAITED,
    ReleaseStage.TAG_CREATED,
    ReleaseStage.TAG_PUSHED,
    ReleaseStage.BRANCH_PUSHED,
    ReleaseStage.RELEASE_WORKFLOW_WAITED,
    ReleaseStage.MODULE_AVAILABILITY_WAITED,
]

POST_TAG_WAITS = (
    ReleaseStage.RELEASE_WORKFLOW_WAITED,
    ReleaseStage.MODULE_AVAILABILITY_WAITED,
)


def resume_stage(repo: RepoReleasePlan, tag_on_remote: bool) -> ReleaseStage:
    """Map persisted progress flags to the first stage still to run.

    A repository counts as released only when `tag_pushed` is set AND its
    tag was just verified on the remote; a failed post-tag wait is retried
    from that wait.

    Args:
        repo: The repository's persisted plan entry.
        tag_on_remote: Whether `repo.next_version` exists on the remote.
    """
    if repo.tag_pushed and tag_on_remote:
        for wait in POST_TAG_WAITS:
            if repo.last_failed_operation == wait.value:
                return wait
        return ReleaseStage.DONE
    if repo.ci_passed:
        return ReleaseStage.TAG_CREATED
    if repo.changelog_pushed:
        return ReleaseStage.CI_WAITED_AFTER_CHANGELOG
    return ReleaseStage.START


def stages_from(release_type: ReleaseType, start: ReleaseStage) -> list[ReleaseStage]:
    """Stages of `release_type`'s state machine at or after `start`."""
    stages = RC_STAGES if release_type is ReleaseType.RC else FULL_STAGES
    first = STAGE_ORDER.index(start)
    return [s for s in stages if STAGE_ORDER.index(s) >= first]


class OrchestrationResult(BaseModel):
    released: list[str] = Field(default_factory=list)
    already_released: list[str] = Field(default_factory=list)


class RepoRelease:
    """One repository's pass through the release state machine."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        plan: ReleasePlan,
        node: RepositoryNode,
    ) -> None:
        self.orch = orchestrator
        self.config = orchestrator.config
        self.plan = plan
        self.node = node
        self.name = node.name
        self.repo = plan.repos[node.name]
        self.version = self.repo.next_version
        self.git = orchestrator.git_factory(node.dir)
        self.handler = orchestrator.registry.get(node.project_type)
        self.is_rc = plan.release_type is ReleaseType.RC
        self.branch = self.config.rc_branch if self.is_rc else self.config.main_branch
        self.deps_pending = False

    def log(self, msg: str) -> None:
        echo(f"  [{self.name}] {msg}")

    def run(self, start: ReleaseStage) -> None:
        """Run every remaining stage, checkpointing on failure.

        Raises:
            StepFailure: Naming the stage that failed.
        """
        actions: dict[ReleaseStage, Callable[[], None]] = {
            ReleaseStage.BRANCH_RESET: self.reset_branch,
            ReleaseStage.DEPENDENCIES_UPDATED: self.update_dependencies,
            ReleaseStage.DEPENDENCY_PUSHED: self.push_dependencies,
            ReleaseStage.DEPENDENCY_CI_WAITED: self.wait_dependency_ci,
            ReleaseStage.CHANGELOG_COMMITTED: self.commit_changelog,
            ReleaseStage.CHANGELOG_PUSHED: self.push_changelog,
            ReleaseStage.CI_WAITED_AFTER_CHANGELOG: self.wait_changelog_ci,
            ReleaseStage.TAG_CREATED: self.create_tag,
            ReleaseStage.TAG_PUSHED: self.push_tag,
            ReleaseStage.BRANCH_PUSHED: self.push_branch,
            ReleaseStage.RELEASE_WORKFLOW_WAITED: self.wait_release_workflow,
            ReleaseStage.MODULE_AVAILABILITY_WAITED: self.wait_module_availability,
        }
        self.log(f"releasing {self.version} from {start.value}")
        for stage in stages_from(self.plan.release_type, start):
            try:
                self.orch.token.raise_if_cancelled()
                actions[stage]()
            except Exception as exc:
                self.repo.last_failed_operation = stage.value
                self.orch.checkpoint(self.plan)
                raise StepFailure(self.name, stage.value, exc) from exc
        self.repo.last_failed_operation = ""
        self.orch.checkpoint(self.plan)
        self.log(f"✓ released {self.version}")

    def _has_workflows(self) -> bool:
        return (self.node.dir / ".github" / "workflows").is_dir()

    def _wait_ci(self) -> None:
        if self.config.skip_ci:
            self.log("skipping CI wait (--skip-ci)")
            return
        if self.config.dry_run:
            self.log(f"[dry-run] would wait for CI on {self.branch}")
            return
        if not self._has_workflows():
            self.log("no .github/workflows, skipping CI wait")
            return
        self.log(f"waiting for CI on {self.branch}")
        self.orch.ci.wait_for_ci_workflow(self.node.dir, self.branch)

    def _ahead_of_remote(self) -> bool:
        try:
            return self.git.commit_count(f"origin/{self.branch}..HEAD") > 0
        except CommandError:
            return False

    # Stages

    def reset_branch(self) -> None:
        main, rc = self.config.main_branch, self.config.rc_branch
        self.git.fetch("origin", main)
        if self.git.ref_exists(f"refs/heads/{rc}"):
            self.log(f"resetting {rc} to origin/{main}")
            self.git.checkout(rc)
            self.git.reset_hard(f"origin/{main}")
        else:
            self.log(f"creating {rc} from origin/{main}")
            self.git.checkout("-b", rc, f"origin/{main}")

    def update_dependencies(self) -> None:
        versions = self.orch.dependency_versions(self.plan, self.node)
        if self.config.dry_run:
            for path, version in versions.items():
                self.log(f"[dry-run] would pin {path} to {version}")
            return
        changed = self.handler.update_dependencies(self.node.dir, versions, self.orch.token)
        changed = self.handler.set_version(self.node.dir, self.version) or changed
        if changed:
            files = [f for f in self.handler.files_to_commit() if (self.node.dir / f).exists()]
            self.log(f"committing dependency updates ({', '.join(files)})")
            self.git.add(*files)
            self.git.commit(DEPS_COMMIT_MESSAGE)
        self.deps_pending = changed or self._ahead_of_remote()

    def push_dependencies(self) -> None:
        if not self.deps_pending:
            return
        self.log(f"pushing dependency updates to {self.branch}")
        self.git.push("origin", f"HEAD:{self.branch}", force_with_lease=self.is_rc)

    def wait_dependency_ci(self) -> None:
        if self.deps_pending:
            self._wait_ci()
        if self.is_rc and not self.repo.ci_passed:
            # Last gate before tagging for release candidates
            self.repo.ci_passed = True
            self.orch.checkpoint(self.plan)

    def commit_changelog(self) -> None:
        if self.config.dry_run:
            self.log(f"[dry-run] would commit {CHANGELOG_FILE} if modified")
            return
        if not self.git.is_modified(CHANGELOG_FILE):
            return
        self.log(f"committing {CHANGELOG_FILE}")
        self.git.add(CHANGELOG_FILE)
        self.git.commit(f"docs(changelog): update {CHANGELOG_FILE} for {self.version}")

    def push_changelog(self) -> None:
        self.git.push("origin", f"HEAD:{self.config.main_branch}")
        self.repo.changelog_pushed = True
        self.orch.checkpoint(self.plan)

    def wait_changelog_ci(self) -> None:
        self._wait_ci()
        self.repo.ci_passed = True
        self.orch.checkpoint(self.plan)

    def create_tag(self) -> None:
        if self.git.tag_exists_local(self.version):
            self.log(f"tag {self.version} already exists locally")
            return
        self.git.tag(self.version, f"Release {self.version}")

    def push_tag(self) -> None:
        if self.git.tag_exists_remote(self.version):
            self.log(f"tag {self.version} already on origin")
        else:
            self.git.push("origin", f"refs/tags/{self.version}")
        self.repo.tag_pushed = True
        self.orch.checkpoint(self.plan)

    def push_branch(self) -> None:
        self.git.push("origin", self.config.rc_branch, force_with_lease=True)

    def wait_release_workflow(self) -> None:
        if self.config.dry_run:
            return
        if not self._has_workflows():
            self.log("no .github/workflows, skipping release workflow wait")
            return
        self.log(f"waiting for release workflow of {self.version}")
        self.orch.ci.wait_for_release_workflow(self.node.dir, self.version)

    def wait_module_availability(self) -> None:
        if self.config.dry_run or not self.handler.publishes or not self.node.path:
            return
        self.log(f"waiting for {self.node.path}@{self.version} to be available")
        self.orch.index.wait_for_module(self.handler, self.node.path, self.version)


class Orchestrator:
    """Applies a release plan level by level.

    Args:
        config: Run switches.
        store: Where the plan is checkpointed.
        graph: Dependency graph rebuilt from the plan's root.
        ci: CI status collaborator.
        index: Package-index availability collaborator.
        registry: Project handlers.
        git_factory: Builds the Git adapter for a repository directory.
        token: Run-wide cancellation token.
    """

    def __init__(
        self,
        config: OrchestrationConfig,
        store: PlanStore,
        graph: DependencyGraph,
        *,
        ci: GitHubCI | None = None,
        index: PackageIndex | None = None,
        registry: HandlerRegistry | None = None,
        git_factory: Callable[[Path], Git] | None = None,
        token: CancelToken | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.graph = graph
        self.token = token or CancelToken(config.deadline_seconds)
        self.ci = ci or GitHubCI(self.token)
        self.index = index or PackageIndex(self.token)
        self.registry = registry or HandlerRegistry()
        self.git_factory = git_factory or (
            lambda d: Git(d, dry_run=config.dry_run, token=self.token)
        )

    def checkpoint(self, plan: ReleasePlan) -> None:
        if not self.config.dry_run:
            self.store.save(plan)

    def dependency_versions(self, plan: ReleasePlan, node: RepositoryNode) -> dict[str, str]:
        """Module path → version each in-ecosystem dependency is pinned to.

        Selected dependencies get their new version; the rest keep their
        current one.
        """
        versions: dict[str, str] = {}
        for dep in node.deps:
            dep_plan = plan.repos.get(dep)
            dep_node = self.graph.get_node(dep)
            if dep_plan is None or not dep_node.path:
                continue
            versions[dep_node.path] = (
                dep_plan.next_version if dep_plan.selected else dep_plan.current_version
            )
        return versions

    def run(self, plan: ReleasePlan) -> OrchestrationResult:
        """Release every selected repository, level by level.

        Raises:
            LevelFailure: If any repository in a level failed; later levels
                are not started.
        """
        if self.config.dry_run:
            plan = plan.model_copy(deep=True)
        result = OrchestrationResult()

        step("Release orchestration")
        for index, level in enumerate(plan.release_levels):
            self.token.raise_if_cancelled()
            pending = self._pending(plan, level, result)
            if not pending:
                continue
            echo(f"Level {index}: {', '.join(pending)}")
            failures = self._run_level(plan, pending, result)
            if failures:
                raise LevelFailure(index, failures)

        echo(f"Released {len(result.released)} repositories")
        return result

    def _pending(
        self, plan: ReleasePlan, level: list[str], result: OrchestrationResult
    ) -> dict[str, ReleaseStage]:
        pending: dict[str, ReleaseStage] = {}
        for name in level:
            repo = plan.repos.get(name)
            if repo is None or not repo.selected or not repo.has_changes:
                continue
            node = self.graph.get_node(name)
            tag_on_remote = False
            if repo.tag_pushed:
                try:
                    tag_on_remote = self.git_factory(node.dir).tag_exists_remote(repo.next_version)
                except CommandError as exc:
                    warn(f"{name}: cannot verify tag {repo.next_version} on origin: {exc}")
            start = resume_stage(repo, tag_on_remote)
            if start is ReleaseStage.DONE:
                echo(f"  [{name}] {repo.next_version} already released, skipping")
                result.already_released.append(name)
                continue
            if repo.tag_pushed and not tag_on_remote:
                warn(f"{name}: tag {repo.next_version} marked pushed but missing on origin")
            if self.config.resume and repo.last_failed_operation:
                echo(f"  [{name}] retrying (failed at {repo.last_failed_operation})")
            pending[name] = start
        return pending

    def _run_level(
        self,
        plan: ReleasePlan,
        pending: dict[str, ReleaseStage],
        result: OrchestrationResult,
    ) -> dict[str, StepFailure]:
        failures: dict[str, StepFailure] = {}
        done: set[str] = set()
        workers = self.config.max_workers or len(pending)
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(RepoRelease(self, plan, self.graph.get_node(name)).run, start): name
                for name, start in pending.items()
            }
            for future in concurrent.futures.as_completed(futures):
                name = futures[future]
                try:
                    future.result()
                except StepFailure as exc:
                    failures[name] = exc
                except LockstepError as exc:
                    failures[name] = StepFailure(name, "Checkpoint", exc)
                else:
                    done.add(name)
        # Completion order is arbitrary; report in level order
        result.released.extend(n for n in pending if n in done)
        return failures
