"""Version parsing and bumping utilities.

Three policies:
- semantic: major/minor/patch bumps of a `vX.Y.Z` tag;
- release candidate: the next patch (or the current prerelease's base)
  with a `nightly.<short sha>` prerelease identifier;
- calendar: `vYYYY.MM.DD[.N]` tags for the ecosystem parent.
"""

from __future__ import annotations

import re
from datetime import date

import semver
from pydantic import BaseModel

from .errors import CommandError, VersionCalculationError
from .git import Git
from .models import BumpKind, ReleaseType

DEFAULT_TAG = "v0.0.0"
RC_PREFIX = "nightly"

CALENDAR_RE = re.compile(r"^v(\d{4})\.(\d{2})\.(\d{2})(?:\.(\d+))?$")

_BREAKING_MARKERS = ("BREAKING", "!:")
_FEATURE_PREFIXES = ("feat:", "feat(")


def parse_version(version_str: str) -> semver.Version:
    """Parse a version string or tag into a semver.Version object.

    A leading "v" is ignored and incomplete versions are padded with zeros:
    - "v1" → "1.0.0"
    - "1.2" → "1.2.0"
    - "v0.4.1-nightly.abc1234" → "0.4.1-nightly.abc1234"

    Raises:
        ValueError: If the string is not a semantic version.
    """
    core, sep, rest = version_str.removeprefix("v").partition("-")
    parts = core.split(".")
    # Pad with zeros to ensure we have at least 3 parts
    while len(parts) < 3:
        parts.append("0")
    return semver.Version.parse(".".join(parts) + sep + rest)


def is_calendar_version(tag: str) -> bool:
    return CALENDAR_RE.match(tag) is not None


def format_tag(version: semver.Version) -> str:
    return f"v{version}"


def bump(current: str, kind: BumpKind) -> str:
    """Apply a semantic bump to a tag and return the new tag.

    A prerelease current version bumped by patch is finalized rather than
    incremented, since the stable release sorts right after it.

    Examples:
        bump("v1.2.3", MAJOR) → "v2.0.0"
        bump("v1.2.3", MINOR) → "v1.3.0"
        bump("v1.2.3", PATCH) → "v1.2.4"
        bump("v0.4.1-nightly.abc", PATCH) → "v0.4.1"
    """
    v = parse_version(current)
    if kind is BumpKind.MAJOR:
        return format_tag(v.bump_major())
    if kind is BumpKind.MINOR:
        return format_tag(v.bump_minor())
    if kind is BumpKind.PATCH:
        if v.prerelease:
            return format_tag(v.finalize_version())
        return format_tag(v.bump_patch())
    return current


def rc_version(current: str, short_sha: str) -> str:
    """Compute a release-candidate tag.

    A prerelease current tag keeps its base version; a stable one is bumped
    by patch first. Either way the prerelease is `nightly.<short_sha>`, so
    RC tags never collide and sort after the stable version they follow.

    Examples:
        rc_version("v0.4.0", "abc1234") → "v0.4.1-nightly.abc1234"
        rc_version("v0.4.1-nightly.def5678", "abc1234") → "v0.4.1-nightly.abc1234"
    """
    v = parse_version(current)
    base = v.finalize_version() if v.prerelease else v.bump_patch()
    return format_tag(base.replace(prerelease=f"{RC_PREFIX}.{short_sha}"))


def suggest_bump_from_commits(subjects: list[str]) -> BumpKind:
    """Suggest a bump from conventional-commit subjects.

    Any breaking change → major; any `feat` → minor; otherwise patch.
    """
    has_feat = False
    for subject in subjects:
        if any(marker in subject for marker in _BREAKING_MARKERS):
            return BumpKind.MAJOR
        if subject.startswith(_FEATURE_PREFIXES):
            has_feat = True
    return BumpKind.MINOR if has_feat else BumpKind.PATCH


class VersionResult(BaseModel):
    """Outcome of a version computation for one repository.

    Attributes:
        current: Latest tag, or DEFAULT_TAG when the repository has none.
        next: Tag to release; equals `current` when nothing changed.
        commits_since_tag: Commits between the current tag and HEAD.
    """

    current: str
    next: str
    commits_since_tag: int = 0

    @property
    def has_changes(self) -> bool:
        return self.next != self.current


def compute_next_version(
    git: Git,
    release_type: ReleaseType,
    kind: BumpKind = BumpKind.PATCH,
    force_increment: bool = False,
) -> VersionResult:
    """Compute a repository's next version from its latest tag.

    No tag at all is treated as v0.0.0 with one pending commit. With zero
    commits since the tag, HEAD exactly at that tag and no forced
    increment, the version is left unchanged. Calendar tags (and any
    non-semantic tag in RC mode) are carried through unchanged.

    Raises:
        VersionCalculationError: If a full release meets a malformed tag.
    """
    tag = git.describe_last_tag()
    if tag is None:
        current, commits = DEFAULT_TAG, 1
    else:
        current = tag
        # Some calendar tags (v2025.10.18) also parse as semver
        if is_calendar_version(tag):
            return VersionResult(current=tag, next=tag)
        try:
            parse_version(tag)
        except ValueError:
            if release_type is ReleaseType.RC:
                return VersionResult(current=tag, next=tag)
            raise VersionCalculationError(
                f"Cannot parse tag {tag!r} in {git.repo_dir} as a semantic version"
            ) from None
        try:
            commits = git.commit_count(f"{tag}..HEAD")
        except CommandError as exc:
            raise VersionCalculationError(
                f"Failed to count commits since {tag} in {git.repo_dir}: {exc}"
            ) from exc
        if commits == 0 and not force_increment and git.exact_tag() == tag:
            return VersionResult(current=tag, next=tag)

    if release_type is ReleaseType.RC:
        next_tag = rc_version(current, git.rev_parse("HEAD", short=True))
    else:
        next_tag = bump(current, kind if kind is not BumpKind.NONE else BumpKind.PATCH)
    return VersionResult(current=current, next=next_tag, commits_since_tag=commits)


def latest_calendar_tag(tags: list[str]) -> str | None:
    """First calendar tag in `tags` (which arrive highest version first)."""
    for tag in tags:
        m = CALENDAR_RE.match(tag)
        if m and int(m.group(1)) > 2000:
            return tag
    return None


def calendar_version(
    tags: list[str],
    any_changes: bool,
    today: date | None = None,
) -> str:
    """Compute the ecosystem parent's next calendar tag.

    With no member changes the latest calendar tag is kept as is. Otherwise
    the tag is `vYYYY.MM.DD`, suffixed `.N` (N = highest existing suffix + 1)
    when that date has already been released.

    Args:
        tags: The parent repository's tags.
        any_changes: Whether any member repository has changes.
        today: Date to use; defaults to the local date.
    """
    today = today or date.today()
    base = f"v{today.year}.{today.month:02d}.{today.day:02d}"

    if not any_changes:
        return latest_calendar_tag(sorted(tags, key=_calendar_key, reverse=True)) or base

    has_base = False
    max_suffix = 0
    for tag in tags:
        if tag == base:
            has_base = True
        elif tag.startswith(base + "."):
            suffix = tag[len(base) + 1 :]
            if suffix.isdigit():
                max_suffix = max(max_suffix, int(suffix))
    if not has_base and max_suffix == 0:
        return base
    return f"{base}.{max_suffix + 1}"


def _calendar_key(tag: str) -> tuple[int, ...]:
    m = CALENDAR_RE.match(tag)
    if m is None:
        return (0,)
    return tuple(int(g or 0) for g in m.groups())
