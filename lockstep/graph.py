"""Dependency graph utilities.

Builds the ecosystem's dependency graph from member manifests and levels it
for release. Repositories must be released in dependency order so that when
repository A depends on B, B's new version exists before A is rewritten to
reference it.
"""

from __future__ import annotations

import glob
from collections.abc import Callable, Iterable
from pathlib import Path

from pydantic import BaseModel, Field

from .errors import CycleError, GraphBuildError
from .projects import HandlerRegistry, ProjectType
from .toml import get_ecosystem_member_globs, load_pyproject


class RepositoryNode(BaseModel):
    """One member repository.

    Attributes:
        name: Unique repository name (its directory name).
        path: Declared module path or package name; "" if it has none.
        dir: Absolute path to the repository's working tree.
        project_type: Which handler parses its manifest.
        deps: Names of in-ecosystem repositories it depends on, in the
              order they appear in its manifest.
    """

    model_config = {"frozen": True}

    name: str
    path: str
    dir: Path
    project_type: ProjectType
    deps: tuple[str, ...] = Field(default_factory=tuple)


class DependencyGraph:
    """Repository name → RepositoryNode, plus forward and reverse edges.

    Nodes keep their discovery order; every traversal that produces
    user-visible output iterates in that order.
    """

    def __init__(self) -> None:
        self.nodes: dict[str, RepositoryNode] = {}
        self.edges: dict[str, list[str]] = {}
        self.rev_edges: dict[str, list[str]] = {}

    def add_node(self, node: RepositoryNode) -> None:
        if node.name in self.nodes:
            raise GraphBuildError(f"Duplicate repository name: {node.name}")
        self.nodes[node.name] = node
        self.edges[node.name] = []
        self.rev_edges[node.name] = []

    def add_edge(self, dependent: str, dependency: str) -> None:
        if dependency not in self.edges[dependent]:
            self.edges[dependent].append(dependency)
            self.rev_edges[dependency].append(dependent)

    def get_node(self, name: str) -> RepositoryNode:
        try:
            return self.nodes[name]
        except KeyError:
            raise GraphBuildError(f"Unknown repository: {name}") from None

    def dependencies(self, name: str) -> list[str]:
        return list(self.edges.get(name, []))

    def dependents(self, name: str) -> list[str]:
        return list(self.rev_edges.get(name, []))

    def names(self) -> list[str]:
        return list(self.nodes)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)


def discover_members(root: Path) -> list[Path]:
    """Expand the ecosystem root's member globs into repository directories.

    Globs are expanded in declaration order and each glob's matches sorted,
    so discovery order is stable across runs.
    """
    member_globs = get_ecosystem_member_globs(load_pyproject(root / "pyproject.toml"))
    seen: set[Path] = set()
    member_dirs: list[Path] = []
    for pattern in member_globs:
        for match in sorted(glob.glob(str(root / pattern))):
            p = Path(match).resolve()
            if p.is_dir() and p not in seen:
                seen.add(p)
                member_dirs.append(p)
    if not member_dirs:
        raise GraphBuildError("No repositories found matching ecosystem members")
    return member_dirs


def build_graph(
    member_dirs: Iterable[Path],
    registry: HandlerRegistry | None = None,
) -> DependencyGraph:
    """Scan member manifests and resolve in-ecosystem dependency edges.

    First pass records every node's module path; second pass matches each
    declared dependency against those paths. Dependencies that are not
    ecosystem members are ignored.

    Raises:
        GraphBuildError: If a manifest cannot be parsed.
    """
    registry = registry or HandlerRegistry()
    graph = DependencyGraph()
    declared: dict[str, list[str]] = {}

    for d in member_dirs:
        project_type = registry.detect(d)
        handler = registry.get(project_type)
        graph.add_node(
            RepositoryNode(
                name=d.name,
                path=handler.module_path(d),
                dir=d,
                project_type=project_type,
            )
        )
        declared[d.name] = [dep.name for dep in handler.parse_dependencies(d)]

    by_path = {node.path: node.name for node in graph.nodes.values() if node.path}
    for name, dep_paths in declared.items():
        deps: list[str] = []
        for dep_path in dep_paths:
            target = by_path.get(dep_path)
            # Self-references (e.g. a package's own extras) are not edges
            if target is not None and target != name and target not in deps:
                deps.append(target)
                graph.add_edge(name, target)
        graph.nodes[name] = graph.nodes[name].model_copy(update={"deps": tuple(deps)})

    return graph


def release_levels(
    graph: DependencyGraph,
    include: Callable[[str], bool] | None = None,
) -> list[list[str]]:
    """Group included repositories into release levels.

    Layered Kahn's algorithm: level 0 holds every included repository with
    no included dependencies; level k holds those whose included
    dependencies all sit in levels < k. Excluded repositories never appear
    and never block anything. Order within a level is discovery order.

    Args:
        graph: The ecosystem dependency graph.
        include: Predicate over repository names; defaults to all.

    Returns:
        List of levels, each a list of repository names.

    Raises:
        CycleError: If the included subgraph has a cycle.

    Example:
        If app depends on base, and both are included:
        release_levels(graph) → [["base"], ["app"]]
    """
    included = [n for n in graph.names() if include is None or include(n)]
    included_set = set(included)

    # Count included dependencies for each included repository
    in_degree = {
        n: sum(1 for d in graph.dependencies(n) if d in included_set) for n in included
    }

    levels: list[list[str]] = []
    current = [n for n in included if in_degree[n] == 0]
    placed = 0
    while current:
        levels.append(current)
        placed += len(current)
        ready: set[str] = set()
        for node in current:
            for dependent in graph.dependents(node):
                if dependent not in included_set:
                    continue
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.add(dependent)
        current = [n for n in included if n in ready]

    if placed != len(included):
        raise CycleError(_cycle_members(graph, {n for n in included if in_degree[n] > 0}))
    return levels


def _cycle_members(graph: DependencyGraph, blocked: set[str]) -> list[str]:
    """Peel off blocked repositories that merely depend on a cycle."""
    remaining = set(blocked)
    changed = True
    while changed:
        changed = False
        for n in list(remaining):
            if not any(d in remaining for d in graph.dependents(n)):
                remaining.discard(n)
                changed = True
    return sorted(remaining or blocked)


def expand_with_dependencies(
    repos: Iterable[str], graph: DependencyGraph
) -> tuple[list[str], list[str]]:
    """Add every transitive in-ecosystem dependency of `repos`.

    Returns:
        (expanded, auto_included): all repositories in discovery order, and
        those that were added only because something depends on them.
    """
    requested = set(repos)
    for name in requested:
        graph.get_node(name)
    wanted = set(requested)
    stack = list(requested)
    while stack:
        for dep in graph.dependencies(stack.pop()):
            if dep not in wanted:
                wanted.add(dep)
                stack.append(dep)
    expanded = [n for n in graph.names() if n in wanted]
    auto = [n for n in expanded if n not in requested]
    return expanded, auto
