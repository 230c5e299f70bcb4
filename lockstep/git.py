"""Version-control adapter.

The only module that invokes the git executable. Every call runs inside a
given repository directory. Write operations (tag, push, commit, ...) share
a retry path that retries only on transient local-lock failures; read
operations run once.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel

from .errors import CommandError
from .shell import CancelToken, CommandResult, echo, run_command

WRITE_ATTEMPTS = 3
RETRY_BASE_SECONDS = 0.5

# Substrings in git's output that mean another git process holds a lock.
LOCK_MARKERS = ("index.lock", "Unable to create", "cannot lock ref")

_BRANCH_RE = re.compile(
    r"^## (?:No commits yet on )?(?P<branch>[^.\s]+(?:\.[^.\s]+)*?)"
    r"(?:\.\.\.(?P<upstream>\S+))?(?: \[(?P<track>[^\]]+)\])?$"
)


class GitStatus(BaseModel):
    """Snapshot of a working tree, as shown by `git status --porcelain --branch`."""

    branch: str = ""
    is_dirty: bool = False
    has_upstream: bool = False
    ahead_count: int = 0
    behind_count: int = 0
    modified_count: int = 0
    staged_count: int = 0
    untracked_count: int = 0


def parse_status(porcelain: str) -> GitStatus:
    """Parse `git status --porcelain=v1 --branch` output into a GitStatus."""
    status = GitStatus()
    for line in porcelain.splitlines():
        if line.startswith("## "):
            m = _BRANCH_RE.match(line)
            if m is None:
                continue
            status.branch = m.group("branch")
            status.has_upstream = m.group("upstream") is not None
            for part in (m.group("track") or "").split(","):
                kind, _, count = part.strip().partition(" ")
                if kind == "ahead":
                    status.ahead_count = int(count)
                elif kind == "behind":
                    status.behind_count = int(count)
            continue
        if len(line) < 3:
            continue
        x, y = line[0], line[1]
        if x == "?" and y == "?":
            status.untracked_count += 1
            continue
        if x not in (" ", "?"):
            status.staged_count += 1
        if y not in (" ", "?"):
            status.modified_count += 1
    status.is_dirty = bool(
        status.modified_count or status.staged_count or status.untracked_count
    )
    return status


def is_lock_error(output: str) -> bool:
    return any(marker in output for marker in LOCK_MARKERS)


class Git:
    """Runs git commands against one repository directory.

    Args:
        repo_dir: Working directory for every command.
        dry_run: If True, write operations are printed instead of executed.
        token: Cancellation token shared with the rest of the run.
        sleep: Backoff sleeper; defaults to the token's cancellable sleep.
        runner: Command runner, replaceable in tests.
    """

    def __init__(
        self,
        repo_dir: Path | str,
        *,
        dry_run: bool = False,
        token: CancelToken | None = None,
        sleep: Callable[[float], None] | None = None,
        runner: Callable[..., CommandResult] = run_command,
    ) -> None:
        self.repo_dir = Path(repo_dir)
        self.dry_run = dry_run
        self.token = token
        self._runner = runner
        if sleep is not None:
            self._sleep = sleep
        elif token is not None:
            self._sleep = token.sleep
        else:
            self._sleep = time.sleep

    def _exec(self, args: tuple[str, ...]) -> CommandResult:
        return self._runner(["git", *args], cwd=self.repo_dir, token=self.token)

    def read(self, *args: str, check: bool = True) -> str:
        """Run a read-only git command once and return its output.

        Args:
            *args: Arguments to pass to git (e.g., "status", "--short").
            check: If True (default), raise CommandError on non-zero exit.
        """
        result = self._exec(args)
        if check and not result.ok:
            raise CommandError(result.args, result.returncode, result.output)
        return result.output

    def write(self, *args: str) -> str:
        """Run a mutating git command, retrying transient lock failures.

        Up to WRITE_ATTEMPTS attempts with exponential backoff starting at
        RETRY_BASE_SECONDS. Any failure that is not a lock failure aborts
        immediately.
        """
        if self.dry_run:
            echo(f"  [dry-run] git {' '.join(args)}  ({self.repo_dir})")
            return ""

        delay = RETRY_BASE_SECONDS
        result: CommandResult | None = None
        for attempt in range(1, WRITE_ATTEMPTS + 1):
            result = self._exec(args)
            if result.ok:
                return result.output
            if not is_lock_error(result.output) or attempt == WRITE_ATTEMPTS:
                break
            echo(
                f"  git lock held in {self.repo_dir.name}, retrying "
                f"(attempt {attempt + 1}/{WRITE_ATTEMPTS})"
            )
            self._sleep(delay)
            delay *= 2

        assert result is not None
        raise CommandError(result.args, result.returncode, result.output)

    # Read operations

    def status(self) -> GitStatus:
        return parse_status(self.read("status", "--porcelain=v1", "--branch"))

    def current_branch(self) -> str:
        return self.read("rev-parse", "--abbrev-ref", "HEAD")

    def changed_files(self) -> list[str]:
        """Paths with unstaged or staged modifications, deduplicated and sorted."""
        unstaged = self.read("diff", "--name-only").splitlines()
        staged = self.read("diff", "--cached", "--name-only").splitlines()
        return sorted({p for p in unstaged + staged if p})

    def is_modified(self, path: str) -> bool:
        """True if `path` is untracked or has unstaged or staged changes."""
        return bool(self.read("status", "--porcelain=v1", "--", path))

    def untracked_files(self) -> list[str]:
        output = self.read("ls-files", "--others", "--exclude-standard")
        return [p for p in output.splitlines() if p]

    def has_staged_changes(self) -> bool:
        return bool(self.read("diff", "--cached", "--name-only"))

    def describe_last_tag(self) -> str | None:
        """Most recent tag reachable from HEAD, or None if there is none."""
        result = self._exec(("describe", "--tags", "--abbrev=0"))
        return result.output.splitlines()[0] if result.ok and result.output else None

    def exact_tag(self) -> str | None:
        """Tag pointing exactly at HEAD, or None."""
        result = self._exec(("describe", "--exact-match", "--tags", "HEAD"))
        return result.output.splitlines()[0] if result.ok and result.output else None

    def commit_count(self, rev_range: str) -> int:
        return int(self.read("rev-list", "--count", rev_range) or "0")

    def rev_parse(self, ref: str, *, short: bool = False) -> str:
        if short:
            return self.read("rev-parse", "--short", ref)
        return self.read("rev-parse", ref)

    def ref_exists(self, ref: str) -> bool:
        return self._exec(("rev-parse", "--verify", "--quiet", ref)).ok

    def tags(self, pattern: str = "*") -> list[str]:
        """Tags matching `pattern`, highest version first."""
        output = self.read("tag", "--list", pattern, "--sort=-v:refname", check=False)
        return [t.strip() for t in output.splitlines() if t.strip()]

    def tag_exists_local(self, tag: str) -> bool:
        return bool(self.read("tag", "--list", tag, check=False))

    def tag_exists_remote(self, tag: str, remote: str = "origin") -> bool:
        output = self.read("ls-remote", "--tags", remote, f"refs/tags/{tag}")
        return bool(output)

    def remote_url(self, remote: str = "origin") -> str:
        return self.read("config", "--get", f"remote.{remote}.url")

    # Write operations

    def add(self, *paths: str) -> None:
        self.write("add", "--", *paths)

    def commit(self, message: str) -> None:
        self.write("commit", "-m", message)

    def tag(self, tag: str, message: str) -> None:
        self.write("tag", "-a", tag, "-m", message)

    def push(self, remote: str, *refs: str, force_with_lease: bool = False) -> None:
        if force_with_lease:
            self.write("push", "--force-with-lease", remote, *refs)
        else:
            self.write("push", remote, *refs)

    def fetch(self, remote: str, *refs: str) -> None:
        self.write("fetch", remote, *refs)

    def checkout(self, *args: str) -> None:
        self.write("checkout", *args)

    def reset_hard(self, ref: str) -> None:
        self.write("reset", "--hard", ref)
