"""Persisted record of the last successful apply.

Destroy replays the last successful apply in reverse, so the order is kept
on disk between runs, one JSON file per deployment:

    ~/.azdeploy/state/<deployment>.json
    {"deployment": "demo", "order": ["resource_group/rg", ...], "applied_at": "..."}

Writes use a temporary file and an atomic rename with 0600 permissions.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from azdeploy.models import DeclarationError, ResourceId
from azdeploy.planner import ExecutionPlan

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """Raised when the state store cannot be read or written."""

    pass


@dataclass
class ApplyRecord:
    """Order and time of the last successful apply for a deployment."""

    deployment: str
    order: list[ResourceId]
    applied_at: str

    def to_dict(self) -> dict:
        return {
            "deployment": self.deployment,
            "order": [str(rid) for rid in self.order],
            "applied_at": self.applied_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApplyRecord":
        return cls(
            deployment=data["deployment"],
            order=[ResourceId.parse(value) for value in data["order"]],
            applied_at=data.get("applied_at", ""),
        )


class StateStore:
    """Directory of apply records keyed by deployment name."""

    DEPLOYMENT_PATTERN = re.compile(r"^[A-Za-z0-9][\w.-]{0,89}$")

    def __init__(self, state_dir: Path | str):
        self.state_dir = Path(state_dir).expanduser()

    def _path_for(self, deployment: str) -> Path:
        if not self.DEPLOYMENT_PATTERN.match(deployment):
            raise StateStoreError(
                f"Invalid deployment name: {deployment}. "
                "Use letters, numbers, dots, dashes and underscores."
            )
        return self.state_dir / f"{deployment}.json"

    def load(self, deployment: str) -> ApplyRecord | None:
        """Load the apply record, or None if the deployment was never applied."""
        path = self._path_for(deployment)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
            return ApplyRecord.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, DeclarationError) as e:
            raise StateStoreError(f"Failed to read state file {path}: {e}") from e

    def record_apply(self, deployment: str, execution_plan: ExecutionPlan) -> ApplyRecord:
        """Persist the order of a successful apply."""
        record = ApplyRecord(
            deployment=deployment,
            order=list(execution_plan.order),
            applied_at=datetime.now(timezone.utc).isoformat(),
        )
        path = self._path_for(deployment)
        temp_path = path.with_suffix(".tmp")
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            with open(temp_path, "w") as f:
                json.dump(record.to_dict(), f, indent=2)
            os.chmod(temp_path, 0o600)
            temp_path.replace(path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StateStoreError(f"Failed to write state file {path}: {e}") from e

        logger.debug(f"Recorded apply of {deployment} at {path}")
        return record

    def clear(self, deployment: str) -> bool:
        """Remove the apply record. Returns False if there was none."""
        path = self._path_for(deployment)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise StateStoreError(f"Failed to remove state file {path}: {e}") from e
        logger.debug(f"Cleared apply record for {deployment}")
        return True
