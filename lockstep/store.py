"""Release plan persistence.

One JSON file holds the whole plan. Writes go to a temporary file in the
same directory and are renamed over the old plan, so a crash mid-write
leaves the previous plan intact.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import threading
from pathlib import Path

from pydantic import ValidationError

from .errors import PersistenceError, PlanNotFoundError
from .models import ReleasePlan


class PlanStore:
    """Save, load and clear the release plan file.

    Args:
        path: Plan file location.
        staging: Directory holding staged changelogs; defaults to a
            `staging` directory beside the plan file.
    """

    def __init__(self, path: Path, staging: Path | None = None) -> None:
        self.path = path
        self.staging = staging if staging is not None else path.parent / "staging"
        # Concurrent repository tasks checkpoint through the same store
        self._lock = threading.Lock()

    def save(self, plan: ReleasePlan) -> None:
        """Atomically persist `plan`.

        Raises:
            PersistenceError: If the file cannot be written.
        """
        with self._lock:
            data = plan.model_dump_json(indent=2)
            tmp_name = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=self.path.parent, prefix=".release_plan.", suffix=".tmp"
                )
                with os.fdopen(fd, "w") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.path)
            except OSError as exc:
                if tmp_name is not None and os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise PersistenceError(f"Cannot write {self.path}: {exc}") from exc

    def load(self) -> ReleasePlan:
        """Read the plan back.

        Raises:
            PlanNotFoundError: If no plan has been saved.
            PersistenceError: If the file is unreadable or invalid.
        """
        try:
            data = self.path.read_text()
        except FileNotFoundError:
            raise PlanNotFoundError(f"No release plan found at {self.path}") from None
        except OSError as exc:
            raise PersistenceError(f"Cannot read {self.path}: {exc}") from exc
        try:
            return ReleasePlan.model_validate_json(data)
        except ValidationError as exc:
            raise PersistenceError(f"Invalid release plan {self.path}: {exc}") from exc

    def exists(self) -> bool:
        return self.path.exists()

    def clear(self) -> None:
        """Delete the plan file and any staged changelogs."""
        with self._lock:
            try:
                self.path.unlink(missing_ok=True)
                if self.staging.exists():
                    shutil.rmtree(self.staging)
            except OSError as exc:
                raise PersistenceError(f"Cannot clear {self.path}: {exc}") from exc

    def staging_path(self, repo: str) -> Path:
        return self.staging / repo / "CHANGELOG.md"
