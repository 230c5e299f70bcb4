"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
import tomlkit

from lockstep.errors import CommandError
from lockstep.git import GitStatus
from lockstep.models import ApprovalStatus, BumpKind, ReleasePlan, RepoReleasePlan
from lockstep.store import PlanStore


class FakeGit:
    """In-memory stand-in for lockstep.git.Git.

    Reads answer from the attributes below; writes are recorded in `writes`
    (and in the shared `events` list as (repo name, *args)).
    """

    def __init__(self, repo_dir: Path, events: list[tuple[str, ...]]) -> None:
        self.repo_dir = repo_dir
        self.events = events
        self.writes: list[tuple[str, ...]] = []
        self.last_tag: str | None = None
        self.exact: str | None = None
        self.commits = 0
        self.ahead = 0
        self.short_sha = "abc1234"
        self.branch = "main"
        self.local_tags: set[str] = set()
        self.remote_tags: set[str] = set()
        self.changed: list[str] = []
        self.untracked: list[str] = []
        self.modified: set[str] = set()
        self.staged = False
        self.log_output = ""
        self.fail_on: Callable[[tuple[str, ...]], bool] | None = None
        self.manifest_at_tag: str | None = None

    def _write(self, *args: str) -> None:
        if self.fail_on is not None and self.fail_on(args):
            raise CommandError(["git", *args], 1, "remote rejected")
        self.writes.append(args)
        self.events.append((self.repo_dir.name, *args))

    # Reads

    def read(self, *args: str, check: bool = True) -> str:
        return self.log_output

    def status(self) -> GitStatus:
        return GitStatus(
            branch=self.branch,
            has_upstream=True,
            ahead_count=self.ahead,
            is_dirty=bool(self.changed or self.untracked),
            modified_count=len(self.changed),
            untracked_count=len(self.untracked),
        )

    def current_branch(self) -> str:
        return self.branch

    def changed_files(self) -> list[str]:
        return list(self.changed)

    def untracked_files(self) -> list[str]:
        return list(self.untracked)

    def is_modified(self, path: str) -> bool:
        return path in self.modified

    def has_staged_changes(self) -> bool:
        return self.staged

    def describe_last_tag(self) -> str | None:
        return self.last_tag

    def exact_tag(self) -> str | None:
        return self.exact

    def commit_count(self, rev_range: str) -> int:
        if rev_range.startswith("origin/"):
            return self.ahead
        return self.commits

    def rev_parse(self, ref: str, *, short: bool = False) -> str:
        return self.short_sha

    def ref_exists(self, ref: str) -> bool:
        return False

    def tags(self, pattern: str = "*") -> list[str]:
        return sorted(self.local_tags, reverse=True)

    def tag_exists_local(self, tag: str) -> bool:
        return tag in self.local_tags

    def tag_exists_remote(self, tag: str, remote: str = "origin") -> bool:
        return tag in self.remote_tags

    # Writes

    def add(self, *paths: str) -> None:
        self._write("add", *paths)
        self.staged = True

    def commit(self, message: str) -> None:
        self._write("commit", "-m", message)

    def tag(self, tag: str, message: str) -> None:
        self._write("tag", "-a", tag, "-m", message)
        self.local_tags.add(tag)
        manifest = self.repo_dir / "pyproject.toml"
        if manifest.exists():
            self.manifest_at_tag = manifest.read_text()

    def push(self, remote: str, *refs: str, force_with_lease: bool = False) -> None:
        self._write("push", remote, *refs)
        for ref in refs:
            if ref.startswith("refs/tags/"):
                self.remote_tags.add(ref.removeprefix("refs/tags/"))

    def fetch(self, remote: str, *refs: str) -> None:
        self._write("fetch", remote, *refs)

    def checkout(self, *args: str) -> None:
        self._write("checkout", *args)

    def reset_hard(self, ref: str) -> None:
        self._write("reset", "--hard", ref)


class FakeGitFactory:
    """Hands out one FakeGit per directory, shared across calls."""

    def __init__(self) -> None:
        self.events: list[tuple[str, ...]] = []
        self._repos: dict[Path, FakeGit] = {}

    def __call__(self, repo_dir: Path) -> FakeGit:
        key = Path(repo_dir).resolve()
        if key not in self._repos:
            self._repos[key] = FakeGit(key, self.events)
        return self._repos[key]

    def writes(self) -> dict[str, list[tuple[str, ...]]]:
        return {git.repo_dir.name: git.writes for git in self._repos.values()}


@pytest.fixture
def fake_git() -> FakeGitFactory:
    return FakeGitFactory()


@pytest.fixture
def store(tmp_path: Path) -> PlanStore:
    state = tmp_path / "state" / "release"
    return PlanStore(state / "release_plan.json", state / "staging")


def write_python_repo(
    repo_dir: Path, name: str, version: str = "1.0.0", deps: list[str] | None = None
) -> Path:
    repo_dir.mkdir(parents=True, exist_ok=True)
    doc = tomlkit.document()
    project = tomlkit.table()
    project["name"] = name
    project["version"] = version
    project["dependencies"] = deps or []
    doc["project"] = project
    (repo_dir / "pyproject.toml").write_text(tomlkit.dumps(doc))
    return repo_dir


@pytest.fixture
def ecosystem(tmp_path: Path) -> Callable[[dict[str, list[str]]], Path]:
    """Build an ecosystem root with Python member repositories.

    Takes a map of repository name → dependency strings, writes
    `repos/<name>/pyproject.toml` for each, and returns the root.
    """

    def build(repos: dict[str, list[str]]) -> Path:
        root = tmp_path / "eco"
        root.mkdir(exist_ok=True)
        (root / "pyproject.toml").write_text(
            '[project]\nname = "eco"\nversion = "0.0.0"\n\n'
            '[tool.lockstep]\nmembers = ["repos/*"]\n'
        )
        for name, deps in repos.items():
            write_python_repo(root / "repos" / name, name, deps=deps)
        return root.resolve()

    return build


def make_repo_plan(current: str, next_version: str, **flags: object) -> RepoReleasePlan:
    fields: dict[str, object] = {
        "current_version": current,
        "next_version": next_version,
        "selected": current != next_version,
        "selected_bump": BumpKind.PATCH,
        "status": ApprovalStatus.APPROVED,
    }
    fields.update(flags)
    return RepoReleasePlan(**fields)


@pytest.fixture
def make_plan() -> Callable[..., ReleasePlan]:
    def build(root: Path, levels: list[list[str]], repos: dict[str, RepoReleasePlan], **kwargs: object) -> ReleasePlan:
        return ReleasePlan(root_dir=str(root), release_levels=levels, repos=repos, **kwargs)

    return build


@pytest.fixture
def tmp_pyproject(tmp_path: Path) -> Path:
    """Create a temporary pyproject.toml file."""
    content = """\
[project]
name = "test-package"
version = "1.0.0"
dependencies = [
    "requests>=2.0",
    "internal-dep>=1.0",
]

[project.optional-dependencies]
dev = ["pytest>=8.0", "another-internal>=0.5"]

[dependency-groups]
test = ["pytest>=8.0", "group-internal>=0.1"]
"""
    pyproject = tmp_path / "pyproject.toml"
    pyproject.write_text(content)
    return pyproject


@pytest.fixture
def sample_toml_doc() -> tomlkit.TOMLDocument:
    """Create a sample TOML document."""
    content = """\
[project]
name = "My_Package"
version = "2.0.0"
dependencies = ["click>=8.0", "pydantic>=2.0"]

[project.optional-dependencies]
dev = ["pytest>=8.0"]
docs = ["sphinx>=7.0"]

[dependency-groups]
test = ["hypothesis>=6.0", {include-group = "lint"}]

[tool.lockstep]
members = ["repos/*", "libs/*"]
"""
    return tomlkit.parse(content)
