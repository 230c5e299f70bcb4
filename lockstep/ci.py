"""External status collaborators: CI workflows and package indexes.

CI status comes from GitHub Actions through the `gh` CLI; artifact
availability is checked with the project type's own tooling. Both block,
polling on the run's cancellation token, until success, failure or their
own timeout.
"""

from __future__ import annotations

import json
import re
import time
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel, ValidationError

from .errors import CommandError, LockstepError
from .git import Git
from .projects import ProjectHandler
from .shell import CancelToken, CommandResult, echo, run_command

CI_WORKFLOW = "CI"
RELEASE_WORKFLOW = "Release"

_GIT_URL_RE = re.compile(
    r"(?:git@github\.com:|https://github\.com/|ssh://git@github\.com/)"
    r"([^/]+)/([^/]+?)(?:\.git)?/?$"
)


class WorkflowError(LockstepError):
    """A CI workflow failed, or never appeared before the timeout."""


class WorkflowRun(BaseModel):
    databaseId: int
    headBranch: str = ""
    workflowName: str = ""
    status: str = ""
    conclusion: str = ""


class WaitConfig(BaseModel):
    """Polling parameters (seconds)."""

    poll_interval: float = 5
    ci_find_timeout: float = 5 * 60
    release_find_timeout: float = 30 * 60
    release_total_timeout: float = 60 * 60
    ci_watch_timeout: float = 60 * 60


def repo_slug(remote_url: str) -> str:
    """Turn a GitHub remote URL into "owner/repo".

    Examples:
        "git@github.com:acme/base.git" → "acme/base"
        "https://github.com/acme/base" → "acme/base"
    """
    m = _GIT_URL_RE.search(remote_url.strip())
    if m is None:
        raise WorkflowError(f"Unable to parse repository URL: {remote_url}")
    return f"{m.group(1)}/{m.group(2)}"


class GitHubCI:
    """Waits on GitHub Actions workflow runs.

    Args:
        token: Run-wide cancellation token.
        config: Polling intervals and timeouts.
        runner: Command runner, replaceable in tests.
        clock: Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        token: CancelToken,
        config: WaitConfig | None = None,
        runner: Callable[..., CommandResult] = run_command,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.token = token
        self.config = config or WaitConfig()
        self._runner = runner
        self._clock = clock

    def _slug(self, repo_dir: Path) -> str:
        git = Git(repo_dir, token=self.token, runner=self._runner)
        return repo_slug(git.remote_url())

    def _gh(self, *args: str, timeout: float | None = None) -> CommandResult:
        return self._runner(["gh", *args], timeout=timeout, token=self.token)

    def _list_runs(self, slug: str, *args: str) -> list[WorkflowRun] | None:
        result = self._gh("run", "list", "--repo", slug, *args)
        if not result.ok:
            return None
        try:
            return [WorkflowRun.model_validate(r) for r in json.loads(result.output or "[]")]
        except (ValueError, ValidationError):
            return None

    def _watch(self, slug: str, run_id: int, label: str, timeout: float) -> None:
        echo(f"  {label}: watching workflow run {run_id}")
        result = self._gh(
            "run", "watch", str(run_id), "--repo", slug, "--exit-status", timeout=timeout
        )
        if not result.ok:
            raise WorkflowError(f"{label}: workflow run {run_id} failed (exit {result.returncode})")

    def wait_for_ci_workflow(self, repo_dir: Path, branch: str = "main") -> None:
        """Wait for the CI run on the latest commit of `origin/<branch>`.

        Raises:
            WorkflowError: If the run fails or does not appear in time.
            Cancelled: If the run's token fires.
        """
        slug = self._slug(repo_dir)
        git = Git(repo_dir, token=self.token, runner=self._runner)
        sha = git.rev_parse(f"origin/{branch}")
        label = f"{repo_dir.name} CI"

        deadline = self._clock() + self.config.ci_find_timeout
        while True:
            self.token.sleep(self.config.poll_interval)
            runs = self._list_runs(
                slug,
                "--workflow", CI_WORKFLOW,
                "--commit", sha,
                "--limit", "1",
                "--json", "databaseId",
            )
            if runs:
                break
            if self._clock() >= deadline:
                raise WorkflowError(
                    f"{label}: timeout waiting for CI workflow for commit {sha[:12]} to appear"
                )
        self._watch(slug, runs[0].databaseId, label, self.config.ci_watch_timeout)
        echo(f"  {label}: passed")

    def wait_for_release_workflow(self, repo_dir: Path, version: str) -> None:
        """Wait for the Release workflow triggered by pushing `version`.

        Raises:
            WorkflowError: If the run fails or does not appear in time.
            Cancelled: If the run's token fires.
        """
        slug = self._slug(repo_dir)
        label = f"{repo_dir.name}@{version} release"
        started = self._clock()
        find_deadline = started + self.config.release_find_timeout

        run_id: int | None = None
        attempts = 0
        while run_id is None:
            self.token.sleep(self.config.poll_interval)
            attempts += 1
            for run in self._list_runs(
                slug,
                "--workflow", RELEASE_WORKFLOW,
                "--limit", "10",
                "--json", "databaseId,headBranch,event,workflowName",
            ) or []:
                if run.headBranch in (version, f"refs/tags/{version}") and (
                    run.workflowName.lower() == RELEASE_WORKFLOW.lower()
                ):
                    run_id = run.databaseId
                    break
            if run_id is None and self._clock() >= find_deadline:
                raise WorkflowError(
                    f"{label}: no workflow run appeared (tried {attempts} times)"
                )
            if run_id is None and attempts % 4 == 0:
                echo(f"  {label}: still waiting for the workflow to start")

        remaining = self.config.release_total_timeout - (self._clock() - started)
        self._watch(slug, run_id, label, max(remaining, 1.0))
        echo(f"  {label}: completed")


class PackageIndex:
    """Polls a package index until a released version is resolvable.

    Backoff starts at `initial_backoff`, doubles up to `max_backoff`, and
    gives up after `max_retries` attempts or `timeout` seconds.
    """

    def __init__(
        self,
        token: CancelToken,
        runner: Callable[..., CommandResult] = run_command,
        clock: Callable[[], float] = time.monotonic,
        max_retries: int = 20,
        initial_backoff: float = 15,
        max_backoff: float = 60,
        timeout: float = 5 * 60,
    ) -> None:
        self.token = token
        self._runner = runner
        self._clock = clock
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.timeout = timeout

    def wait_for_module(self, handler: ProjectHandler, module_path: str, version: str) -> None:
        """Block until `module_path@version` resolves.

        Raises:
            CommandError: If the version never becomes available.
            Cancelled: If the run's token fires.
        """
        args = handler.availability_command(module_path, version)
        deadline = self._clock() + self.timeout
        backoff = self.initial_backoff
        result: CommandResult | None = None
        for attempt in range(1, self.max_retries + 1):
            result = self._runner(
                args, env=handler.availability_env(), timeout=self.timeout, token=self.token
            )
            if result.ok:
                return
            echo(
                f"  Waiting for {module_path}@{version} to be available "
                f"(attempt {attempt}/{self.max_retries})..."
            )
            if self._clock() + backoff > deadline:
                break
            self.token.sleep(backoff)
            backoff = min(backoff * 2, self.max_backoff)
        raise CommandError(
            args,
            result.returncode if result is not None else -1,
            f"{module_path}@{version} not available after {self.timeout:.0f}s",
        )
