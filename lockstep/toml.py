"""TOML reading and writing utilities.

Uses tomlkit to preserve formatting and comments when modifying
pyproject.toml files, so version and pin rewrites stay diff-friendly.
"""

from __future__ import annotations

from pathlib import Path

import tomlkit
from packaging.utils import canonicalize_name
from tomlkit.exceptions import TOMLKitError

from .errors import GraphBuildError


def load_pyproject(path: Path) -> tomlkit.TOMLDocument:
    """Load and parse a TOML file (pyproject.toml or lockstep.toml).

    Returns a TOMLDocument that preserves formatting when modified and saved.

    Raises:
        GraphBuildError: If the file cannot be read or is not valid TOML.
    """
    try:
        return tomlkit.parse(path.read_text())
    except (OSError, TOMLKitError) as exc:
        raise GraphBuildError(f"Cannot parse {path}: {exc}") from exc


def save_pyproject(path: Path, doc: tomlkit.TOMLDocument) -> None:
    """Save a TOMLDocument back to disk, preserving original formatting."""
    path.write_text(tomlkit.dumps(doc))


def get_project_name(doc: tomlkit.TOMLDocument, fallback: str) -> str:
    """Extract the canonical package name from [project].name.

    Names are normalized per PEP 503 (lowercase, hyphens instead of
    underscores) for consistent comparison.
    """
    return canonicalize_name(doc.get("project", {}).get("name", fallback))


def get_all_dependency_strings(doc: tomlkit.TOMLDocument) -> list[str]:
    """Collect all dependency strings from a pyproject.toml.

    Gathers dependencies from three locations:
    - [project].dependencies (main runtime deps)
    - [project].optional-dependencies.* (extras like [dev], [test])
    - [dependency-groups].* (PEP 735 dependency groups)

    Returns raw PEP 508 strings like "requests>=2.0" or "pkg[extra]~=1.0".
    Non-string group entries (PEP 735 include-group tables) are skipped.
    """
    project = doc.get("project", {})
    deps: list[str] = list(project.get("dependencies", []))
    for group_deps in project.get("optional-dependencies", {}).values():
        deps.extend(group_deps)
    for group_deps in doc.get("dependency-groups", {}).values():
        deps.extend(d for d in group_deps if isinstance(d, str))
    return [str(d) for d in deps]


def get_ecosystem_member_globs(doc: tomlkit.TOMLDocument) -> list[str]:
    """Extract member repository globs from the ecosystem root pyproject.toml.

    Reads [tool.lockstep].members, falling back to [tool.uv.workspace].members.

    Raises:
        GraphBuildError: If neither table defines members.
    """
    tool = doc.get("tool", {})
    members = tool.get("lockstep", {}).get("members")
    if not members:
        members = tool.get("uv", {}).get("workspace", {}).get("members")
    if not members:
        raise GraphBuildError(
            "No [tool.lockstep] members (or [tool.uv.workspace] members) "
            "defined in the ecosystem root pyproject.toml"
        )
    return [str(m) for m in members]
