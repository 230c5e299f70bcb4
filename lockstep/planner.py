"""Release planning and review.

A planning pass builds the dependency graph, computes every repository's
next version, levels the changed set and persists the resulting plan.
Review mutations edit that persisted plan one change at a time, saving
after each.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from pathlib import Path

from .changelog import (
    ChangelogGenerator,
    fix_changelog_header,
    gather_git_context,
    stage_changelog,
)
from .config import PlanOptions
from .errors import CommandError, LockstepError, ReviewError
from .git import Git
from .graph import (
    DependencyGraph,
    build_graph,
    discover_members,
    expand_with_dependencies,
    release_levels,
)
from .models import (
    ApprovalStatus,
    BumpKind,
    ReleasePlan,
    ReleaseType,
    RepoReleasePlan,
)
from .projects import HandlerRegistry
from .shell import echo, step, warn
from .store import PlanStore
from .versions import (
    VersionResult,
    bump,
    calendar_version,
    compute_next_version,
    suggest_bump_from_commits,
)


def _bump_overrides(options: PlanOptions) -> dict[str, BumpKind]:
    overrides: dict[str, BumpKind] = {}
    for kind, repos in (
        (BumpKind.PATCH, options.patch),
        (BumpKind.MINOR, options.minor),
        (BumpKind.MAJOR, options.major),
    ):
        for repo in repos:
            overrides[repo] = kind
    return overrides


def _select_targets(graph: DependencyGraph, options: PlanOptions) -> tuple[list[str], list[str]]:
    """Repositories to plan for, and those auto-included as dependencies."""
    if not options.repos:
        return graph.names(), []
    for name in options.repos:
        graph.get_node(name)
    if options.with_deps:
        targets, auto = expand_with_dependencies(options.repos, graph)
        echo(f"  Expanded from {len(options.repos)} to {len(targets)} repositories")
        for name in auto:
            echo(f"  Auto-including dependency {name}")
        return targets, auto
    wanted = set(options.repos)
    return [n for n in graph.names() if n in wanted], []


def plan_release(
    root: Path,
    options: PlanOptions,
    store: PlanStore,
    *,
    registry: HandlerRegistry | None = None,
    git_factory: Callable[[Path], Git] = Git,
    changelog: ChangelogGenerator | None = None,
    today: date | None = None,
) -> ReleasePlan:
    """Run a planning pass and persist the plan.

    Args:
        root: Ecosystem root directory.
        options: What to plan.
        store: Where the plan is saved; any previous plan is replaced.
        registry: Project handlers.
        git_factory: Builds the Git adapter for a directory.
        changelog: Generator used when `options.llm_changelog` is set.
        today: Date for the parent's calendar version.

    Raises:
        GraphBuildError, CycleError, VersionCalculationError: From the
            graph and version calculators.
        LockstepError: If no repository has changes.
    """
    if options.llm_changelog and changelog is None:
        raise LockstepError("A changelog generator is required for generated changelogs")

    step("Building dependency graph")
    graph = build_graph(discover_members(root), registry)
    for node in graph.nodes.values():
        deps = f" → [{', '.join(node.deps)}]" if node.deps else ""
        echo(f"  {node.name} ({node.project_type.value}){deps}")

    targets, auto_included = _select_targets(graph, options)
    overrides = _bump_overrides(options)

    step("Calculating versions")
    results: dict[str, VersionResult] = {}
    gits: dict[str, Git] = {}
    for name in targets:
        git = gits[name] = git_factory(graph.get_node(name).dir)
        kind = overrides.get(name, BumpKind.PATCH)
        result = compute_next_version(git, options.release_type, kind, options.force_increment)
        if name in auto_included and not result.has_changes:
            # A requested repository needs this dependency released too
            result = compute_next_version(git, options.release_type, kind, True)
        results[name] = result
        marker = f"{result.current} → {result.next}" if result.has_changes else "no changes"
        echo(f"  {name}: {marker}")

    changed = {name for name, r in results.items() if r.has_changes}
    if not changed:
        raise LockstepError("no repositories have changes")
    levels = release_levels(graph, lambda n: n in changed)

    parent_version = parent_current = ""
    if not options.skip_parent:
        root_git = git_factory(root)
        parent_current = root_git.describe_last_tag() or ""
        parent_version = calendar_version(root_git.tags(), any_changes=True, today=today)
        echo(f"  ecosystem: {parent_current or '<none>'} → {parent_version}")

    plan = ReleasePlan(
        release_type=options.release_type,
        root_dir=str(root),
        parent_version=parent_version,
        parent_current_version=parent_current,
        release_levels=levels,
    )

    step("Preparing repository plans")
    store.clear()
    for name in targets:
        plan.repos[name] = _plan_repo(
            name,
            gits[name],
            results[name],
            overrides.get(name),
            options,
            store,
            changelog,
        )

    store.save(plan)
    echo(f"Release plan saved to {store.path}")
    return plan


def _plan_repo(
    name: str,
    git: Git,
    result: VersionResult,
    override: BumpKind | None,
    options: PlanOptions,
    store: PlanStore,
    changelog: ChangelogGenerator | None,
) -> RepoReleasePlan:
    repo = RepoReleasePlan(
        current_version=result.current,
        next_version=result.next,
        commits_since_last_tag=result.commits_since_tag,
    )
    try:
        repo.apply_git_status(git.status())
    except CommandError as exc:
        warn(f"{name}: cannot read git status: {exc}")

    if not result.has_changes:
        repo.suggested_bump = repo.selected_bump = BumpKind.NONE
        repo.suggestion_reasoning = "No changes since last release"
        repo.status = ApprovalStatus.NONE
        return repo

    last_tag = git.describe_last_tag()
    content = ""
    if options.llm_changelog and changelog is not None:
        echo(f"  Generating changelog for {name}...")
        try:
            generated = changelog.generate(
                git.repo_dir, gather_git_context(git, last_tag), result.next
            )
        except LockstepError as exc:
            warn(f"{name}: changelog generation failed: {exc}")
            repo.suggested_bump = BumpKind.PATCH
            repo.suggestion_reasoning = "Changelog generation failed, defaulting to patch"
        else:
            repo.suggested_bump = (
                generated.suggestion if generated.suggestion is not BumpKind.NONE else BumpKind.PATCH
            )
            repo.suggestion_reasoning = generated.justification
            content = generated.changelog
    else:
        rev_range = f"{last_tag}..HEAD" if last_tag else "HEAD"
        subjects = git.read("log", rev_range, "--pretty=format:%s", check=False).splitlines()
        repo.suggested_bump = suggest_bump_from_commits(subjects)
        repo.suggestion_reasoning = "Based on conventional commit analysis"

    if options.release_type is ReleaseType.RC:
        repo.selected_bump = BumpKind.PATCH
    else:
        repo.selected_bump = override or repo.suggested_bump
        # result.next was computed with the override, or patch by default
        if repo.selected_bump is not (override or BumpKind.PATCH):
            repo.next_version = bump(result.current, repo.selected_bump)

    if content:
        path = store.staging_path(name)
        stage_changelog(path, fix_changelog_header(content, repo.next_version))
        repo.changelog_path = str(path)

    repo.selected = True
    repo.status = ApprovalStatus.PENDING
    return repo


# Review mutations


def _repo(plan: ReleasePlan, name: str) -> RepoReleasePlan:
    try:
        return plan.repos[name]
    except KeyError:
        raise ReviewError(f"Repository {name!r} is not in the release plan") from None


def set_bump(store: PlanStore, name: str, kind: BumpKind) -> ReleasePlan:
    """Change a repository's bump and recompute its next version."""
    plan = store.load()
    repo = _repo(plan, name)
    if plan.release_type is ReleaseType.RC:
        raise ReviewError("Release-candidate versions are not bumped by kind")
    if kind is BumpKind.NONE:
        repo.selected_bump = kind
        repo.next_version = repo.current_version
        repo.selected = False
    else:
        try:
            repo.next_version = bump(repo.current_version, kind)
        except ValueError:
            raise ReviewError(
                f"{name}: {repo.current_version} is not a semantic version"
            ) from None
        repo.selected_bump = kind
    if repo.changelog_path and Path(repo.changelog_path).exists():
        staged = Path(repo.changelog_path)
        staged.write_text(fix_changelog_header(staged.read_text(), repo.next_version))
    store.save(plan)
    return plan


def approve(store: PlanStore, name: str) -> ReleasePlan:
    plan = store.load()
    repo = _repo(plan, name)
    if not repo.has_changes:
        raise ReviewError(f"{name} has no changes to approve")
    repo.status = ApprovalStatus.APPROVED
    store.save(plan)
    return plan


def approve_all(store: PlanStore) -> ReleasePlan:
    plan = store.load()
    for repo in plan.repos.values():
        if repo.selected and repo.has_changes:
            repo.status = ApprovalStatus.APPROVED
    store.save(plan)
    return plan


def set_selected(store: PlanStore, name: str, selected: bool) -> ReleasePlan:
    """Include or exclude a repository from the release.

    Raises:
        ReviewError: When selecting a repository whose next version equals
            its current version.
    """
    plan = store.load()
    repo = _repo(plan, name)
    if selected and not repo.has_changes:
        raise ReviewError(f"{name}: next version equals current version {repo.current_version}")
    repo.selected = selected
    store.save(plan)
    return plan
