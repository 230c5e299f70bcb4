"""Changelog generation and staging.

Changelog text comes from an external generator command: it receives a
prompt (git log and diff stat for the release range) on stdin and prints a
JSON object with a bump suggestion, a justification and the changelog
markdown. Generated changelogs are staged outside the repositories until
the plan is applied.
"""

from __future__ import annotations

import json
import os
import shlex
from datetime import date
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ValidationError, field_validator

from .config import CHANGELOG_CMD_ENV
from .errors import CommandError, LockstepError
from .git import Git
from .models import BumpKind
from .shell import CancelToken, run_command

LOG_FORMAT = "commit %H (%h)%nAuthor: %an <%ae>%nDate: %ad%n%n    %s%n%n%b%n"

PROMPT_TEMPLATE = """\
You are a technical writer responsible for creating release notes and \
suggesting semantic version bumps. Based on the provided git log and diff \
stat, analyze the changes and generate a JSON object with three fields: \
"suggestion", "justification", and "changelog".

JSON schema:
{{
  "suggestion": "major|minor|patch",
  "justification": "A brief, one-sentence explanation for the suggestion.",
  "changelog": "The full changelog in Markdown format."
}}

- major: breaking changes ("feat!:", "BREAKING CHANGE:").
- minor: new features without breaking changes ("feat:").
- patch: fixes, performance work and chores.

The changelog follows "Keep a Changelog", starts with the heading
"## {version} ({today})", cites short commit hashes for each entry, omits
empty sections, and ends with a "### File Changes" section holding the diff
stat in a code block. No preamble, no emojis.

Context from git:
---
{context}
---

Generate the JSON object now:"""


class ChangelogError(LockstepError):
    """The changelog generator failed or returned unusable output."""


class ChangelogResult(BaseModel):
    suggestion: BumpKind = BumpKind.PATCH
    justification: str = ""
    changelog: str = ""

    @field_validator("suggestion", mode="before")
    @classmethod
    def _normalize_suggestion(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or BumpKind.PATCH.value
        return value


class ChangelogGenerator(Protocol):
    def generate(self, repo_dir: Path, context: str, version: str) -> ChangelogResult: ...


def build_prompt(context: str, version: str, today: date | None = None) -> str:
    today = today or date.today()
    return PROMPT_TEMPLATE.format(version=version, today=today.isoformat(), context=context)


def extract_json(output: str) -> dict:
    """Pull the first JSON object out of generator output.

    Tolerates surrounding prose and ```json fences.

    Raises:
        ChangelogError: If no JSON object can be decoded.
    """
    decoder = json.JSONDecoder()
    start = output.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(output, start)
        except json.JSONDecodeError:
            start = output.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = output.find("{", start + 1)
    raise ChangelogError("No JSON object in changelog generator output")


def fix_changelog_header(changelog: str, version: str, today: date | None = None) -> str:
    """Force the first heading to `## <version> (<date>)`.

    Generators tend to invent versions from the git history they are shown.
    """
    if not changelog:
        return changelog
    today = today or date.today()
    header = f"## {version} ({today.isoformat()})"
    first, sep, rest = changelog.partition("\n")
    if not first.strip().startswith("## "):
        return f"{header}\n\n{changelog}"
    return f"{header}\n{rest}" if sep else f"{header}\n"


class CommandChangelogGenerator:
    """Runs an external command as the changelog generator.

    Args:
        command: Argument vector; the prompt is written to its stdin.
        token: Run-wide cancellation token.
        timeout: Seconds before the command is killed.
    """

    def __init__(
        self,
        command: list[str],
        token: CancelToken | None = None,
        timeout: float = 600,
    ) -> None:
        if not command:
            raise ChangelogError("Empty changelog generator command")
        self.command = command
        self.token = token
        self.timeout = timeout

    @classmethod
    def from_env(cls, token: CancelToken | None = None) -> CommandChangelogGenerator:
        """Build a generator from $LOCKSTEP_CHANGELOG_CMD.

        Raises:
            ChangelogError: If the variable is unset or empty.
        """
        raw = os.environ.get(CHANGELOG_CMD_ENV, "")
        if not raw.strip():
            raise ChangelogError(
                f"${CHANGELOG_CMD_ENV} is not set; it must name a command that reads "
                "a prompt on stdin and prints JSON"
            )
        return cls(shlex.split(raw), token=token)

    def generate(self, repo_dir: Path, context: str, version: str) -> ChangelogResult:
        result = run_command(
            self.command,
            cwd=repo_dir,
            input_text=build_prompt(context, version),
            timeout=self.timeout,
            token=self.token,
        )
        if not result.ok:
            raise CommandError(result.args, result.returncode, result.output)
        try:
            parsed = ChangelogResult.model_validate(extract_json(result.output))
        except ValidationError as exc:
            raise ChangelogError(f"Invalid changelog generator response: {exc}") from exc
        changelog = parsed.changelog
        if changelog and not changelog.endswith("\n"):
            changelog += "\n"
        return parsed.model_copy(update={"changelog": fix_changelog_header(changelog, version)})


def gather_git_context(git: Git, last_tag: str | None) -> str:
    """Git log and diff stat for the commits since `last_tag`."""
    rev_range = f"{last_tag}..HEAD" if last_tag else "HEAD"
    log = git.read("log", rev_range, f"--pretty=format:{LOG_FORMAT}", check=False)
    stat = git.read("diff", "--stat", last_tag, "HEAD", check=False) if last_tag else ""
    return f"GIT LOG:\n{log}\n\nGIT DIFF STAT:\n{stat}"


def stage_changelog(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)


def _first_line(text: str) -> str:
    return next((line.strip() for line in text.splitlines() if line.strip()), "")


def prepend_changelog(staged: Path, target: Path) -> bool:
    """Prepend the staged changelog to the repository's CHANGELOG.md.

    Returns False, leaving the file alone, when it already opens with the
    staged entry's heading.
    """
    new = staged.read_text()
    existing = target.read_text() if target.exists() else ""
    if existing and _first_line(existing) == _first_line(new):
        return False
    target.write_text(f"{new}\n{existing}" if existing else new)
    return True
