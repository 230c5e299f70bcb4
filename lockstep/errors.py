"""Exception hierarchy for lockstep.

Library code raises these; only the CLI turns them into an exit status.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence


class LockstepError(Exception):
    """Base class for every error lockstep raises on purpose."""


class CommandError(LockstepError):
    """An external command exited non-zero, timed out, or could not start."""

    def __init__(self, args: Sequence[str], returncode: int, output: str) -> None:
        self.args_list = list(args)
        self.returncode = returncode
        self.output = output
        detail = f": {output}" if output else ""
        super().__init__(
            f"`{' '.join(self.args_list)}` failed (exit {returncode}){detail}"
        )


class Cancelled(LockstepError):
    """The run was cancelled or its deadline elapsed."""


class GraphBuildError(LockstepError):
    """A repository manifest could not be parsed and no fallback applies."""


class CycleError(LockstepError):
    """The dependency graph is not a DAG."""

    def __init__(self, members: Sequence[str]) -> None:
        self.members = sorted(members)
        super().__init__(
            f"Dependency cycle detected among: [{', '.join(self.members)}]"
        )


class VersionCalculationError(LockstepError):
    """An existing tag cannot be interpreted under the requested policy."""


class PersistenceError(LockstepError):
    """Reading or writing the release plan file failed."""


class PlanNotFoundError(PersistenceError):
    """No release plan has been saved yet."""


class ReviewError(LockstepError):
    """A review mutation was rejected (unknown repo, invalid bump, ...)."""


class PreflightError(LockstepError):
    """Pre-flight checks found blocking issues."""


class StepFailure(LockstepError):
    """One stage of a repository's release state machine failed."""

    def __init__(self, repo: str, stage: str, cause: BaseException) -> None:
        self.repo = repo
        self.stage = stage
        self.cause = cause
        super().__init__(f"{repo}: {stage} failed: {cause}")


class LevelFailure(LockstepError):
    """At least one repository in a release level failed.

    Carries every failure from the level, not only the first one.
    """

    def __init__(self, level: int, failures: Mapping[str, StepFailure]) -> None:
        self.level = level
        self.failures = dict(sorted(failures.items()))
        lines = "\n".join(f"  - {f}" for f in self.failures.values())
        super().__init__(
            f"Release level {level} failed for {len(self.failures)} "
            f"repositories ({', '.join(self.failures)}):\n{lines}"
        )
