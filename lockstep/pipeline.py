"""Apply pipeline: preflight → push → changelogs → orchestrate → parent → clear.

This module applies a reviewed release plan:
1. Load the plan, rebuild the dependency graph and re-level the selection
2. Commit member references the ecosystem repository sees as moved
3. Run preflight checks on every selected repository
4. Optionally push selected repositories before releasing
5. Install approved staged changelogs into the repositories
6. Release level by level through the orchestrator
7. Commit, tag and push the ecosystem parent
8. Clear the plan

A failure at any point leaves the plan on disk so a later run can resume.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from .changelog import prepend_changelog
from .ci import GitHubCI, PackageIndex
from .config import OrchestrationConfig
from .errors import CommandError, GraphBuildError, LockstepError, PreflightError
from .git import Git
from .graph import (
    DependencyGraph,
    RepositoryNode,
    build_graph,
    discover_members,
    release_levels,
)
from .models import ApprovalStatus, ReleasePlan, ReleaseType
from .orchestrator import CHANGELOG_FILE, OrchestrationResult, Orchestrator
from .projects import HandlerRegistry, strip_v
from .shell import CancelToken, echo, step, warn
from .store import PlanStore
from .versions import calendar_version


def release_commit_message(plan: ReleasePlan, released: list[str]) -> str:
    """Parent commit message listing the released components, sorted by name."""
    parts = [f"{name}@{plan.repos[name].next_version}" for name in sorted(released)]
    return f"chore: release components ({', '.join(parts)})"


def relevel(plan: ReleasePlan, graph: DependencyGraph) -> bool:
    """Re-level the plan from its current selection.

    Review can select a repository that had no changes at plan time; it
    must still get a level. Returns True if the levels changed.
    """

    def releasable(name: str) -> bool:
        repo = plan.repos.get(name)
        return repo is not None and repo.selected and repo.has_changes

    levels = release_levels(graph, releasable)
    if levels == plan.release_levels:
        return False
    plan.release_levels = levels
    return True


def _member_path(graph: DependencyGraph, name: str, root: Path) -> str:
    return graph.get_node(name).dir.relative_to(root.resolve()).as_posix()


def commit_member_references(
    plan: ReleasePlan,
    graph: DependencyGraph,
    git: Git,
    config: OrchestrationConfig,
) -> list[str]:
    """Commit selected members whose recorded revision moved in the parent.

    Returns the members committed (or that would be, in a dry run).
    """
    root = Path(plan.root_dir)
    changed = set(git.changed_files())
    moved = [n for n in plan.selected_repos() if _member_path(graph, n, root) in changed]
    if not moved:
        return []
    if config.dry_run:
        echo(f"  [dry-run] would commit member references ({', '.join(moved)})")
        return moved
    echo(f"  Committing member references ({', '.join(moved)})")
    git.add(*(_member_path(graph, n, root) for n in moved))
    git.commit(f"chore: update member references for release ({', '.join(moved)})")
    return moved


def _latest_release(
    plan: ReleasePlan, node: RepositoryNode, git_factory: Callable[[Path], Git]
) -> str | None:
    repo = plan.repos.get(node.name)
    if repo is not None:
        return repo.next_version if repo.tag_pushed else repo.current_version
    try:
        return git_factory(node.dir).describe_last_tag()
    except CommandError:
        return None


def outdated_dependencies(
    plan: ReleasePlan,
    graph: DependencyGraph,
    registry: HandlerRegistry,
    git_factory: Callable[[Path], Git],
) -> dict[str, list[str]]:
    """In-ecosystem pins older than the dependency's latest release.

    Keyed by dependent repository; entries read "dep: pinned → latest".
    Unpinned dependencies are not reported.
    """
    by_path = {node.path: node for node in graph.nodes.values() if node.path}
    outdated: dict[str, list[str]] = {}
    for node in graph.nodes.values():
        try:
            declared = registry.get(node.project_type).parse_dependencies(node.dir)
        except GraphBuildError as exc:
            warn(f"{node.name}: cannot read dependencies: {exc}")
            continue
        for dep in declared:
            dep_node = by_path.get(dep.name)
            if dep_node is None or dep_node.name == node.name or not dep.version:
                continue
            latest = _latest_release(plan, dep_node, git_factory)
            if latest and strip_v(latest) != strip_v(dep.version):
                outdated.setdefault(node.name, []).append(
                    f"{dep_node.name}: {dep.version} → {latest}"
                )
    return outdated


def preflight_issues(
    plan: ReleasePlan,
    graph: DependencyGraph,
    config: OrchestrationConfig,
    git_factory: Callable[[Path], Git],
) -> dict[str, list[str]]:
    """Collect blocking issues, keyed by repository ("ecosystem" for the parent).

    Selected repositories must be clean apart from CHANGELOG.md and on the
    expected branch; the parent's calendar tag must not be released yet. A
    local tag that never reached origin is left for `finalize_parent` to
    reuse.
    """
    issues: dict[str, list[str]] = {}
    allowed_branches = {config.main_branch}
    if plan.release_type is ReleaseType.RC:
        allowed_branches.add(config.rc_branch)

    for name in plan.selected_repos():
        git = git_factory(graph.get_node(name).dir)
        found: list[str] = []
        branch = git.current_branch()
        if branch not in allowed_branches:
            found.append(f"on branch {branch!r}, expected {' or '.join(sorted(allowed_branches))}")
        dirty = [
            p for p in git.changed_files() + git.untracked_files() if p != CHANGELOG_FILE
        ]
        if dirty:
            found.append(f"uncommitted changes ({len(dirty)} files)")
        if found:
            issues[name] = found

    if plan.parent_version and not config.skip_parent:
        root_git = git_factory(Path(plan.root_dir))
        if root_git.current_branch() != config.main_branch:
            issues.setdefault("ecosystem", []).append(f"not on {config.main_branch}")
        if root_git.tag_exists_local(plan.parent_version) and root_git.tag_exists_remote(
            plan.parent_version
        ):
            issues.setdefault("ecosystem", []).append(
                f"tag {plan.parent_version} already released"
            )
    return issues


def push_repositories(
    plan: ReleasePlan, graph: DependencyGraph, git_factory: Callable[[Path], Git]
) -> None:
    for name in plan.selected_repos():
        git = git_factory(graph.get_node(name).dir)
        status = git.status()
        if status.has_upstream and status.ahead_count > 0:
            echo(f"  Pushing {name} ({status.ahead_count} commits ahead)")
            git.push("origin", status.branch)


def install_changelogs(plan: ReleasePlan, graph: DependencyGraph) -> None:
    """Prepend approved staged changelogs to each repository's CHANGELOG.md.

    Safe to repeat: an entry already at the top of the file is not added again.
    """
    for name in plan.selected_repos():
        repo = plan.repos[name]
        if repo.status is not ApprovalStatus.APPROVED or not repo.changelog_path:
            continue
        if repo.changelog_pushed:
            continue
        staged = Path(repo.changelog_path)
        if not staged.exists():
            warn(f"{name}: staged changelog {staged} is missing")
            continue
        if prepend_changelog(staged, graph.get_node(name).dir / CHANGELOG_FILE):
            echo(f"  {name}: CHANGELOG.md updated")
        else:
            echo(f"  {name}: CHANGELOG.md already has the {repo.next_version} entry")


def finalize_parent(
    plan: ReleasePlan,
    graph: DependencyGraph,
    released: list[str],
    git: Git,
    config: OrchestrationConfig,
    store: PlanStore,
) -> str:
    """Record released member revisions in the parent, then tag and push it.

    A parent tag left unpushed by an earlier run is reused rather than
    followed by a second tag.

    Returns:
        The parent's calendar tag.
    """
    root = Path(plan.root_dir)
    for name in released:
        git.add(_member_path(graph, name, root))
    if config.dry_run or git.has_staged_changes():
        git.commit(release_commit_message(plan, released))
    else:
        echo("  No member changes to commit in the ecosystem repository")

    version = plan.parent_version
    if git.tag_exists_local(version) and not git.tag_exists_remote(version):
        echo(f"  Reusing unpushed tag {version}")
    else:
        # Recomputed in case another release happened today since planning
        version = calendar_version(git.tags(), any_changes=True)
        if version != plan.parent_version:
            plan.parent_version = version
            if not config.dry_run:
                store.save(plan)
        git.tag(version, f"Release {version}")
    git.push("origin", config.main_branch)
    git.push("origin", f"refs/tags/{version}")
    return version


def apply_release(
    config: OrchestrationConfig,
    store: PlanStore,
    *,
    registry: HandlerRegistry | None = None,
    git_factory: Callable[[Path], Git] | None = None,
    ci: GitHubCI | None = None,
    index: PackageIndex | None = None,
    token: CancelToken | None = None,
) -> OrchestrationResult:
    """Apply the persisted release plan.

    Raises:
        PlanNotFoundError: If no plan has been saved.
        PreflightError: If preflight finds blocking issues (unless forced).
        LevelFailure: If a release level failed; the plan is kept.
    """
    token = token or CancelToken(config.deadline_seconds)
    registry = registry or HandlerRegistry()
    if git_factory is None:

        def git_factory(repo_dir: Path) -> Git:
            return Git(repo_dir, dry_run=config.dry_run, token=token)

    plan = store.load()
    root = Path(plan.root_dir)
    graph = build_graph(discover_members(root), registry)
    if relevel(plan, graph):
        echo("Release levels recomputed for the reviewed selection")
        if not config.dry_run:
            store.save(plan)

    selected = plan.selected_repos()
    if not selected:
        raise LockstepError("No repositories are selected for release")
    echo(f"Applying {plan.release_type.value} release plan for: {', '.join(selected)}")

    with_parent = bool(plan.parent_version) and not config.skip_parent
    if with_parent:
        try:
            commit_member_references(plan, graph, git_factory(root), config)
        except CommandError as exc:
            warn(f"Could not commit member references in the ecosystem repository: {exc}")

    step("Pre-flight checks")
    issues = preflight_issues(plan, graph, config, git_factory)
    for name, found in issues.items():
        for issue in found:
            echo(f"  {name}: {issue}")
    if issues and not (config.force or config.dry_run):
        raise PreflightError(
            f"Pre-flight checks failed for {', '.join(issues)} (use --force to override)"
        )
    if not issues:
        echo("  All checks passed")

    outdated = outdated_dependencies(plan, graph, registry, git_factory)
    if outdated:
        echo("  This release will update dependencies:")
        for name, entries in outdated.items():
            for entry in entries:
                echo(f"    {name} → {entry}")

    if config.push:
        step("Pushing repositories")
        push_repositories(plan, graph, git_factory)

    if plan.release_type is ReleaseType.FULL and not config.dry_run:
        step("Installing changelogs")
        install_changelogs(plan, graph)

    orchestrator = Orchestrator(
        config,
        store,
        graph,
        ci=ci,
        index=index,
        registry=registry,
        git_factory=git_factory,
        token=token,
    )
    result = orchestrator.run(plan)

    released = result.released + result.already_released
    if not with_parent:
        echo("Skipping ecosystem repository updates")
    elif released:
        step("Finalizing ecosystem release")
        version = finalize_parent(plan, graph, released, git_factory(root), config, store)
        echo(f"Ecosystem released as {version}")

    if config.dry_run:
        echo("Dry run complete; the release plan was left in place")
    else:
        store.clear()
        echo(f"Released {len(result.released)} repositories; release plan cleared")
    return result
