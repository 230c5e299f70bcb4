"""CLI entry point for lockstep."""

from __future__ import annotations

import argparse
import signal
from importlib.metadata import version as pkg_version
from pathlib import Path

from lockstep.changelog import CommandChangelogGenerator
from lockstep.config import OrchestrationConfig, PlanOptions, plan_path, staging_dir
from lockstep.errors import LockstepError, PlanNotFoundError
from lockstep.models import BumpKind, ReleasePlan, ReleaseType
from lockstep.pipeline import apply_release
from lockstep.planner import approve, approve_all, plan_release, set_bump, set_selected
from lockstep.shell import CancelToken, echo, fatal, step
from lockstep.store import PlanStore

__version__ = pkg_version("lockstep")


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than 0, got {number}")
    return number


def positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than 0, got {value}")
    return number


def _store() -> PlanStore:
    return PlanStore(plan_path(), staging_dir())


def print_plan(plan: ReleasePlan) -> None:
    """Print the plan as a table, in release-level order."""
    step(f"Release plan ({plan.release_type.value}, created {plan.created_at:%Y-%m-%d %H:%M})")
    if plan.parent_version:
        echo(f"  ecosystem: {plan.parent_current_version or '<none>'} → {plan.parent_version}")
    for index, level in enumerate(plan.release_levels):
        echo(f"  level {index}: {', '.join(level)}")
    echo()

    rows = [("REPO", "CURRENT", "NEXT", "BUMP", "STATUS", "SEL", "PROGRESS")]
    for name in plan.selected_repos() + [n for n in plan.repos if not plan.repos[n].selected]:
        repo = plan.repos[name]
        progress = [
            flag
            for flag, done in (
                ("changelog", repo.changelog_pushed),
                ("ci", repo.ci_passed),
                ("tag", repo.tag_pushed),
            )
            if done
        ]
        if repo.last_failed_operation:
            progress.append(f"failed at {repo.last_failed_operation}")
        rows.append(
            (
                name,
                repo.current_version,
                repo.next_version,
                repo.selected_bump.value,
                repo.status.value,
                "x" if repo.selected else "",
                ", ".join(progress),
            )
        )
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    for row in rows:
        echo("  " + "  ".join(cell.ljust(w) for cell, w in zip(row, widths)).rstrip())


def cmd_plan(args: argparse.Namespace) -> None:
    """Generate a release plan for the ecosystem rooted at the current directory."""
    token = CancelToken()
    options = PlanOptions(
        release_type=ReleaseType.RC if args.rc else ReleaseType.FULL,
        repos=tuple(args.repos or ()),
        with_deps=args.with_deps,
        major=tuple(args.major or ()),
        minor=tuple(args.minor or ()),
        patch=tuple(args.patch or ()),
        force_increment=args.force_increment,
        skip_parent=args.skip_parent,
        llm_changelog=args.llm_changelog,
    )
    changelog = CommandChangelogGenerator.from_env(token) if args.llm_changelog else None
    plan = plan_release(Path.cwd(), options, _store(), changelog=changelog)
    print_plan(plan)
    echo()
    echo("Next steps:")
    echo("  lockstep review --approve-all")
    echo("  lockstep apply --dry-run")
    echo("  lockstep apply")


def cmd_status(args: argparse.Namespace) -> None:
    """Show the current release plan."""
    print_plan(_store().load())


def cmd_review(args: argparse.Namespace) -> None:
    """Apply review mutations to the current plan, in command-line order."""
    store = _store()
    plan = None
    for name, kind in args.bump or ():
        try:
            bump_kind = BumpKind(kind)
        except ValueError:
            fatal(f"Invalid bump {kind!r}; expected major, minor, patch or -")
        plan = set_bump(store, name, bump_kind)
    for name in args.select or ():
        plan = set_selected(store, name, True)
    for name in args.deselect or ():
        plan = set_selected(store, name, False)
    for name in args.approve or ():
        plan = approve(store, name)
    if args.approve_all:
        plan = approve_all(store)
    print_plan(plan or store.load())


def cmd_apply(args: argparse.Namespace) -> None:
    """Apply the reviewed release plan."""
    config = OrchestrationConfig(
        dry_run=args.dry_run,
        force=args.force,
        push=args.push,
        skip_ci=args.skip_ci,
        resume=args.resume,
        skip_parent=args.skip_parent,
        max_workers=args.max_workers,
        deadline_seconds=args.deadline,
    )
    token = CancelToken(config.deadline_seconds)
    # Ctrl-C stops further work; side effects already made stay made
    previous = signal.signal(signal.SIGINT, lambda *_: token.cancel())
    try:
        result = apply_release(config, _store(), token=token)
    finally:
        signal.signal(signal.SIGINT, previous)
    if result.already_released:
        echo(f"Already released: {', '.join(result.already_released)}")


def cmd_clear_plan(args: argparse.Namespace) -> None:
    """Delete the release plan and staged changelogs."""
    store = _store()
    if not store.exists():
        echo("No release plan to clear")
        return
    store.clear()
    echo("Release plan cleared")


def cli() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="lockstep",
        description="Release a multi-repository ecosystem in dependency order.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # plan subcommand
    plan_parser = subparsers.add_parser("plan", help="Generate a release plan.")
    plan_parser.add_argument(
        "--rc", action="store_true", help="Plan a release-candidate (nightly) release."
    )
    plan_parser.add_argument(
        "--repos", nargs="+", metavar="REPO", help="Only release these repositories."
    )
    plan_parser.add_argument(
        "--with-deps",
        action="store_true",
        help="Also release in-ecosystem dependencies of --repos.",
    )
    for kind in ("major", "minor", "patch"):
        plan_parser.add_argument(
            f"--{kind}",
            nargs="+",
            metavar="REPO",
            help=f"Force a {kind} bump for these repositories.",
        )
    plan_parser.add_argument(
        "--force-increment",
        action="store_true",
        help="Bump even repositories with no commits since their last tag.",
    )
    plan_parser.add_argument(
        "--skip-parent", action="store_true", help="Do not version the ecosystem repository."
    )
    plan_parser.add_argument(
        "--llm-changelog",
        action="store_true",
        help="Generate changelogs with $LOCKSTEP_CHANGELOG_CMD.",
    )
    plan_parser.set_defaults(func=cmd_plan)

    # status subcommand
    status_parser = subparsers.add_parser("status", help="Show the current release plan.")
    status_parser.set_defaults(func=cmd_status)

    # review subcommand
    review_parser = subparsers.add_parser("review", help="Edit and approve the release plan.")
    review_parser.add_argument(
        "--bump",
        nargs=2,
        action="append",
        metavar=("REPO", "KIND"),
        help="Set a repository's bump: major, minor, patch or - (repeatable).",
    )
    review_parser.add_argument(
        "--select", action="append", metavar="REPO", help="Include a repository (repeatable)."
    )
    review_parser.add_argument(
        "--deselect", action="append", metavar="REPO", help="Exclude a repository (repeatable)."
    )
    review_parser.add_argument(
        "--approve", action="append", metavar="REPO", help="Approve a repository (repeatable)."
    )
    review_parser.add_argument(
        "--approve-all", action="store_true", help="Approve every selected repository."
    )
    review_parser.set_defaults(func=cmd_review)

    # apply subcommand
    apply_parser = subparsers.add_parser("apply", help="Apply the reviewed release plan.")
    apply_parser.add_argument(
        "--dry-run", action="store_true", help="Print git writes instead of running them."
    )
    apply_parser.add_argument("--force", action="store_true", help="Skip pre-flight checks.")
    apply_parser.add_argument(
        "--push", action="store_true", help="Push selected repositories before releasing."
    )
    apply_parser.add_argument("--skip-ci", action="store_true", help="Do not wait for CI.")
    apply_parser.add_argument(
        "--resume",
        action="store_true",
        help=(
            "Report repositories retried from a failed stage. Every apply resumes "
            "from the progress saved in the plan."
        ),
    )
    apply_parser.add_argument(
        "--skip-parent", action="store_true", help="Do not tag the ecosystem repository."
    )
    apply_parser.add_argument(
        "--max-workers",
        type=positive_int,
        default=None,
        help="Concurrent releases per level. (default: one per repository)",
    )
    apply_parser.add_argument(
        "--deadline",
        type=positive_float,
        default=None,
        metavar="SECONDS",
        help="Cancel the run after this many seconds.",
    )
    apply_parser.set_defaults(func=cmd_apply)

    # clear-plan subcommand
    clear_parser = subparsers.add_parser("clear-plan", help="Delete the release plan.")
    clear_parser.set_defaults(func=cmd_clear_plan)

    args = parser.parse_args()
    try:
        args.func(args)
    except PlanNotFoundError:
        fatal("No release plan found. Run `lockstep plan` first.")
    except LockstepError as exc:
        fatal(str(exc))
