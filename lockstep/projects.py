"""Per-project-type manifest handlers.

The graph builder never parses manifests itself: each member repository
is handed to the handler for its project type, which knows how to find the
module path, the declared dependencies, and how to rewrite them.
"""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from .deps import dep_canonical_name, dep_version, is_pep440, rewrite_pyproject
from .errors import CommandError, GraphBuildError
from .shell import CancelToken, run_command
from .toml import (
    get_all_dependency_strings,
    get_project_name,
    load_pyproject,
)

MANIFEST_NAME = "lockstep.toml"


class ProjectType(str, Enum):
    PYTHON = "python"
    GO = "go"
    TEMPLATE = "template"


class Dependency(BaseModel):
    """One dependency declared in a repository's manifest.

    Attributes:
        name: Module path (Go) or canonical package name (Python).
        version: Declared version, or "" when unpinned.
    """

    name: str
    version: str = ""


def strip_v(version: str) -> str:
    """Drop the leading "v" from a tag-style version ("v1.2.3" → "1.2.3")."""
    return version[1:] if version.startswith("v") else version


class ProjectHandler:
    """Base class for project-type handlers."""

    project_type: ProjectType
    publishes = True

    def has_project_file(self, repo_dir: Path) -> bool:
        raise NotImplementedError

    def module_path(self, repo_dir: Path) -> str:
        raise NotImplementedError

    def parse_dependencies(self, repo_dir: Path) -> list[Dependency]:
        raise NotImplementedError

    def update_dependencies(
        self,
        repo_dir: Path,
        versions: dict[str, str],
        token: CancelToken | None = None,
    ) -> bool:
        """Rewrite in-ecosystem dependencies to `versions` (module path → tag).

        Returns True if any file changed.
        """
        raise NotImplementedError

    def set_version(self, repo_dir: Path, version: str) -> bool:
        """Write `version` into the manifest, if the type records one there."""
        return False

    def files_to_commit(self) -> list[str]:
        return []

    def availability_command(self, module_path: str, version: str) -> list[str]:
        """Command that exits 0 once `module_path@version` is resolvable."""
        raise NotImplementedError

    def availability_env(self) -> dict[str, str] | None:
        return None


class PythonHandler(ProjectHandler):
    project_type = ProjectType.PYTHON

    def has_project_file(self, repo_dir: Path) -> bool:
        return (repo_dir / "pyproject.toml").exists()

    def module_path(self, repo_dir: Path) -> str:
        return get_project_name(load_pyproject(repo_dir / "pyproject.toml"), repo_dir.name)

    def parse_dependencies(self, repo_dir: Path) -> list[Dependency]:
        doc = load_pyproject(repo_dir / "pyproject.toml")
        found: dict[str, Dependency] = {}
        for dep_str in get_all_dependency_strings(doc):
            name = dep_canonical_name(dep_str)
            if name not in found:
                found[name] = Dependency(name=name, version=dep_version(dep_str))
        return list(found.values())

    def update_dependencies(
        self,
        repo_dir: Path,
        versions: dict[str, str],
        token: CancelToken | None = None,
    ) -> bool:
        pins = {name: strip_v(v) for name, v in versions.items()}
        return rewrite_pyproject(repo_dir / "pyproject.toml", None, pins)

    def set_version(self, repo_dir: Path, version: str) -> bool:
        # Release-candidate tags ("0.4.1-nightly.abc1234") are not PEP 440
        if not is_pep440(strip_v(version)):
            return False
        return rewrite_pyproject(repo_dir / "pyproject.toml", strip_v(version), {})

    def files_to_commit(self) -> list[str]:
        return ["pyproject.toml"]

    def availability_command(self, module_path: str, version: str) -> list[str]:
        # Resolves only once the exact version is on the index
        return [
            "python",
            "-m",
            "pip",
            "install",
            "--dry-run",
            "--no-deps",
            "--no-cache-dir",
            f"{module_path}=={strip_v(version)}",
        ]


_GO_MODULE_RE = re.compile(r"^module\s+(\S+)", re.MULTILINE)
_GO_REQUIRE_BLOCK_RE = re.compile(r"^require\s*\((.*?)^\)", re.MULTILINE | re.DOTALL)
_GO_REQUIRE_LINE_RE = re.compile(r"^require[ \t]+([^\s(]\S*)[ \t]+(\S+)", re.MULTILINE)


class GoHandler(ProjectHandler):
    project_type = ProjectType.GO

    def has_project_file(self, repo_dir: Path) -> bool:
        return (repo_dir / "go.mod").exists()

    def _read_go_mod(self, repo_dir: Path) -> str:
        try:
            return (repo_dir / "go.mod").read_text()
        except OSError as exc:
            raise GraphBuildError(f"Cannot read {repo_dir / 'go.mod'}: {exc}") from exc

    def module_path(self, repo_dir: Path) -> str:
        m = _GO_MODULE_RE.search(self._read_go_mod(repo_dir))
        if m is None:
            raise GraphBuildError(f"No module directive in {repo_dir / 'go.mod'}")
        return m.group(1)

    def parse_dependencies(self, repo_dir: Path) -> list[Dependency]:
        text = self._read_go_mod(repo_dir)
        deps: list[Dependency] = []
        for block in _GO_REQUIRE_BLOCK_RE.findall(text):
            for line in block.splitlines():
                parts = line.split("//")[0].split()
                if len(parts) >= 2:
                    deps.append(Dependency(name=parts[0], version=parts[1]))
        for path, version in _GO_REQUIRE_LINE_RE.findall(text):
            deps.append(Dependency(name=path, version=version))
        return deps

    def update_dependencies(
        self,
        repo_dir: Path,
        versions: dict[str, str],
        token: CancelToken | None = None,
    ) -> bool:
        before = self._read_go_mod(repo_dir)
        declared = {d.name for d in self.parse_dependencies(repo_dir)}
        for path, version in versions.items():
            if path not in declared:
                continue
            self._go(repo_dir, token, "get", f"{path}@{version}")
        if versions:
            self._go(repo_dir, token, "mod", "tidy")
        return self._read_go_mod(repo_dir) != before

    def _go(self, repo_dir: Path, token: CancelToken | None, *args: str) -> None:
        result = run_command(["go", *args], cwd=repo_dir, env=self.availability_env(), token=token)
        if not result.ok:
            raise CommandError(result.args, result.returncode, result.output)

    def files_to_commit(self) -> list[str]:
        return ["go.mod", "go.sum"]

    def availability_command(self, module_path: str, version: str) -> list[str]:
        return ["go", "list", "-m", f"{module_path}@{version}"]

    def availability_env(self) -> dict[str, str] | None:
        # Freshly pushed tags are invisible to the module proxy for a while.
        return {**os.environ, "GOPROXY": "direct"}


class TemplateHandler(ProjectHandler):
    """Template repositories: versioned and tagged, but nothing to publish."""

    project_type = ProjectType.TEMPLATE
    publishes = False

    def has_project_file(self, repo_dir: Path) -> bool:
        return (repo_dir / MANIFEST_NAME).exists()

    def module_path(self, repo_dir: Path) -> str:
        return ""

    def parse_dependencies(self, repo_dir: Path) -> list[Dependency]:
        return []

    def update_dependencies(
        self,
        repo_dir: Path,
        versions: dict[str, str],
        token: CancelToken | None = None,
    ) -> bool:
        return False

    def availability_command(self, module_path: str, version: str) -> list[str]:
        return []


class HandlerRegistry:
    """Maps project types to handler instances."""

    def __init__(self, handlers: list[ProjectHandler] | None = None) -> None:
        if handlers is None:
            handlers = [PythonHandler(), GoHandler(), TemplateHandler()]
        self._handlers = {h.project_type: h for h in handlers}

    def get(self, project_type: ProjectType) -> ProjectHandler:
        try:
            return self._handlers[project_type]
        except KeyError:
            raise GraphBuildError(f"No handler registered for {project_type.value!r}") from None

    def detect(self, repo_dir: Path) -> ProjectType:
        """Determine a repository's project type.

        An explicit `type` in lockstep.toml wins. Without one (or if the
        manifest is unreadable) the type is detected from project files.

        Raises:
            GraphBuildError: If no type can be determined.
        """
        manifest = repo_dir / MANIFEST_NAME
        if manifest.exists():
            try:
                declared = load_pyproject(manifest).get("type")
            except GraphBuildError:
                declared = None
            if declared:
                try:
                    return ProjectType(str(declared))
                except ValueError:
                    raise GraphBuildError(
                        f"{manifest}: unknown project type {declared!r}"
                    ) from None
        for project_type in (ProjectType.PYTHON, ProjectType.GO):
            handler = self._handlers.get(project_type)
            if handler is not None and handler.has_project_file(repo_dir):
                return project_type
        raise GraphBuildError(
            f"{repo_dir}: no {MANIFEST_NAME} type and no recognised project file"
        )
