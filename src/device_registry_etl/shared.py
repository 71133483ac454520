"""device_registry_etl.shared

Exceptions, RejectWriter, run counters and report-writing support shared
by the store, the reconciliation steps and the import CLI.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RunFatalError(Exception):
    """Raised when the run cannot start: unreadable input or unreachable backend."""


class RowProcessingError(Exception):
    """Raised when applying one row to the document store fails.

    ``rejected`` carries the field changes already refused for the row
    before the failing write, so they are still counted and reported.
    """

    def __init__(
        self,
        device_id: str,
        cause: BaseException,
        rejected: tuple[Any, ...] = (),
    ) -> None:
        super().__init__(f"device {device_id}: {cause}")
        self.device_id = device_id
        self.cause = cause
        self.rejected = rejected


class DocumentNotFoundError(LookupError):
    """Raised by a partial update against a key that does not exist."""


class DocumentExistsError(Exception):
    """Raised by create() when the key is already taken."""


class MalformedDocumentError(ValueError):
    """Raised when a stored document cannot be read back into its model."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for skipped and failed rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# ImportCounters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    rows_read: int = 0
    rows_skipped: int = 0
    new_devices: int = 0
    changed_devices: int = 0
    unchanged_devices: int = 0
    attempted_invalid_changes: int = 0
    error_count: int = 0
    checkouts_opened: int = 0
    interactions_closed: int = 0
    total_devices: int = 0
    update_number: int | None = None
    update_doc_name: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = list(self.warnings)
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    dry_run: bool,
    source_paths: dict[str, str | None],
    counters: ImportCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
