"""Dependency handling utilities.

Provides functions for parsing PEP 508 dependency strings and rewriting
pyproject.toml files to pin in-ecosystem dependencies to released versions.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, cast

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from .toml import load_pyproject, save_pyproject


def dep_canonical_name(dep_str: str) -> str:
    """Extract the canonical package name from a PEP 508 dependency string.

    Handles version specifiers, extras, and normalizes the name per PEP 503
    (lowercase, hyphens instead of underscores).

    Examples:
        "requests>=2.0" → "requests"
        "My_Package[extra]~=1.0" → "my-package"
    """
    return canonicalize_name(Requirement(dep_str).name)


def dep_version(dep_str: str) -> str:
    """Return the version of an exact pin ("==" or "==="), else ""."""
    try:
        req = Requirement(dep_str)
    except InvalidRequirement:
        return ""
    for spec in req.specifier:
        if spec.operator in ("==", "==="):
            return spec.version
    return ""


def is_pep440(version: str) -> bool:
    try:
        Version(version)
    except InvalidVersion:
        return False
    return True


def pin_dep(dep_str: str, version: str) -> str:
    """Pin a PEP 508 dependency to an exact version.

    Preserves any extras and environment markers, but replaces the version
    specifier with an exact pin. Versions that are not valid PEP 440 (for
    example release-candidate tags like "0.4.1-nightly.abc1234") are pinned
    with arbitrary equality ("===").

    Examples:
        pin_dep("requests>=2.0", "2.31.0") → "requests==2.31.0"
        pin_dep("pkg[extra1,extra2]~=1.0", "1.5.0") → "pkg[extra1,extra2]==1.5.0"
    """
    req = Requirement(dep_str)
    extras = f"[{','.join(sorted(req.extras))}]" if req.extras else ""
    op = "==" if is_pep440(version) else "==="
    marker = f"; {req.marker}" if req.marker else ""
    return f"{req.name}{extras}{op}{version}{marker}"


def rewrite_pyproject(
    pyproject_path: Path,
    new_version: str | None,
    internal_dep_versions: dict[str, str],
) -> bool:
    """Update a package's version and pin its in-ecosystem dependencies.

    Internal deps are pinned in all locations:
    - [project].dependencies
    - [project].optional-dependencies.*
    - [dependency-groups].*

    Uses tomlkit to preserve formatting and comments. The file is only
    written when something actually changed.

    Args:
        pyproject_path: Path to the pyproject.toml file.
        new_version: New [project].version, or None to leave it alone.
        internal_dep_versions: Map of canonical package name → version to pin.

    Returns:
        True if the file content changed.
    """
    doc = load_pyproject(pyproject_path)
    before = doc.as_string()
    project = cast(dict[str, Any], doc["project"])
    if new_version is not None and "version" in project:
        project["version"] = new_version

    if internal_dep_versions:
        deps = project.get("dependencies")
        if isinstance(deps, list):
            _pin_dep_list(deps, internal_dep_versions)

        opt_deps = project.get("optional-dependencies")
        if isinstance(opt_deps, dict):
            for group in opt_deps.values():
                if isinstance(group, list):
                    _pin_dep_list(group, internal_dep_versions)

        dep_groups = doc.get("dependency-groups")
        if isinstance(dep_groups, dict):
            for group in dep_groups.values():
                if isinstance(group, list):
                    _pin_dep_list(group, internal_dep_versions)

    if doc.as_string() == before:
        return False
    save_pyproject(pyproject_path, doc)
    return True


def _pin_dep_list(deps: list, versions: dict[str, str]) -> None:
    """Pin internal dependencies in a list, modifying in place."""
    for i, dep_str in enumerate(deps):
        if not isinstance(dep_str, str):
            continue
        name = dep_canonical_name(str(dep_str))
        if name in versions and dep_version(str(dep_str)) != versions[name]:
            deps[i] = pin_dep(str(dep_str), versions[name])
