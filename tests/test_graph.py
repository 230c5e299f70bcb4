"""Tests for lockstep.graph."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from lockstep.errors import CycleError, GraphBuildError
from lockstep.graph import (
    DependencyGraph,
    RepositoryNode,
    build_graph,
    discover_members,
    expand_with_dependencies,
    release_levels,
)
from lockstep.projects import ProjectType


def make_graph(deps: dict[str, list[str]]) -> DependencyGraph:
    """Build a graph directly from name → dependency names."""
    graph = DependencyGraph()
    for name, names in deps.items():
        graph.add_node(
            RepositoryNode(
                name=name,
                path=name,
                dir=Path("/eco") / name,
                project_type=ProjectType.PYTHON,
                deps=tuple(names),
            )
        )
    for name, names in deps.items():
        for dep in names:
            graph.add_edge(name, dep)
    return graph


class TestDependencyGraph:
    def test_duplicate_node(self) -> None:
        graph = make_graph({"a": []})
        with pytest.raises(GraphBuildError, match="Duplicate"):
            graph.add_node(
                RepositoryNode(name="a", path="a", dir=Path("/a"), project_type=ProjectType.GO)
            )

    def test_unknown_node(self) -> None:
        with pytest.raises(GraphBuildError, match="Unknown repository"):
            make_graph({}).get_node("ghost")

    def test_dependents(self) -> None:
        graph = make_graph({"base": [], "app": ["base"], "cli": ["base"]})
        assert graph.dependents("base") == ["app", "cli"]
        assert graph.dependencies("app") == ["base"]
        assert "app" in graph
        assert len(graph) == 3


class TestReleaseLevels:
    def test_no_deps_single_level(self) -> None:
        graph = make_graph({"c": [], "a": [], "b": []})
        assert release_levels(graph) == [["c", "a", "b"]]

    def test_base_before_app(self) -> None:
        graph = make_graph({"app": ["base"], "base": []})
        assert release_levels(graph) == [["base"], ["app"]]

    def test_diamond(self) -> None:
        graph = make_graph(
            {
                "top": ["left", "right"],
                "left": ["bottom"],
                "right": ["bottom"],
                "bottom": [],
            }
        )
        assert release_levels(graph) == [["bottom"], ["left", "right"], ["top"]]

    def test_every_repo_after_its_dependencies(self) -> None:
        graph = make_graph(
            {"a": ["b", "d"], "b": ["c"], "c": [], "d": ["c"], "e": ["a"], "f": []}
        )
        levels = release_levels(graph)
        level_of = {n: i for i, level in enumerate(levels) for n in level}
        for name in graph.names():
            for dep in graph.dependencies(name):
                assert level_of[dep] < level_of[name]

    def test_deterministic(self) -> None:
        deps = {"x": ["z"], "y": ["z"], "w": [], "z": []}
        assert release_levels(make_graph(deps)) == release_levels(make_graph(deps))
        assert release_levels(make_graph(deps)) == [["w", "z"], ["x", "y"]]

    def test_excluded_repos_never_block(self) -> None:
        """Unchanged dependencies are left out of the levels entirely."""
        graph = make_graph({"app": ["base"], "base": [], "tool": ["app"]})
        levels = release_levels(graph, lambda n: n != "base")
        assert levels == [["app"], ["tool"]]

    def test_empty(self) -> None:
        assert release_levels(make_graph({})) == []

    def test_cycle_names_members(self) -> None:
        graph = make_graph({"a": ["b"], "b": ["c"], "c": ["a"], "d": ["a"], "e": []})
        with pytest.raises(CycleError) as exc_info:
            release_levels(graph)
        assert exc_info.value.members == ["a", "b", "c"]
        assert "Dependency cycle detected among: [a, b, c]" in str(exc_info.value)

    def test_cycle_outside_selection_is_ignored(self) -> None:
        graph = make_graph({"a": ["b"], "b": ["a"], "c": []})
        assert release_levels(graph, lambda n: n == "c") == [["c"]]


class TestExpandWithDependencies:
    def test_adds_transitive_deps(self) -> None:
        graph = make_graph({"lib": [], "core": ["lib"], "app": ["core"], "other": []})
        expanded, auto = expand_with_dependencies(["app"], graph)
        assert expanded == ["lib", "core", "app"]
        assert auto == ["lib", "core"]

    def test_unknown_repo(self) -> None:
        with pytest.raises(GraphBuildError):
            expand_with_dependencies(["ghost"], make_graph({"a": []}))


class TestBuildGraph:
    def test_resolves_in_ecosystem_edges(
        self, ecosystem: Callable[[dict[str, list[str]]], Path]
    ) -> None:
        root = ecosystem(
            {
                "base": ["requests>=2.0"],
                "app": ["base>=1.0", "pydantic"],
                "cli": ["app", "base[extra]"],
            }
        )
        graph = build_graph(discover_members(root))

        assert graph.names() == ["app", "base", "cli"]
        assert graph.get_node("base").deps == ()
        assert graph.get_node("app").deps == ("base",)
        assert graph.get_node("cli").deps == ("app", "base")
        assert release_levels(graph) == [["base"], ["app"], ["cli"]]

    def test_self_reference_is_not_an_edge(
        self, ecosystem: Callable[[dict[str, list[str]]], Path]
    ) -> None:
        root = ecosystem({"base": ["base[extra]"]})
        graph = build_graph(discover_members(root))
        assert graph.get_node("base").deps == ()


class TestDiscoverMembers:
    def test_globs_in_declaration_order(self, tmp_path: Path) -> None:
        (tmp_path / "pyproject.toml").write_text(
            '[tool.lockstep]\nmembers = ["libs/*", "apps/*"]\n'
        )
        for d in ("apps/z", "apps/a", "libs/m"):
            (tmp_path / d).mkdir(parents=True)
        (tmp_path / "apps" / "README.md").write_text("not a repo")

        names = [p.name for p in discover_members(tmp_path)]
        assert names == ["m", "a", "z"]

    def test_no_matches(self, tmp_path: Path) -> None:
        (tmp_path / "pyproject.toml").write_text('[tool.lockstep]\nmembers = ["repos/*"]\n')
        with pytest.raises(GraphBuildError, match="No repositories"):
            discover_members(tmp_path)
