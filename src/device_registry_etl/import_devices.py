"""device_registry_etl.import_devices

CLI entrypoint and run orchestration for the device inventory CSV import.

Usage:
    python -m device_registry_etl.import_devices \\
        --db-dsn "$DB_DSN" \\
        --csv-path "exports/devices.csv" \\
        --profile production

Run phases:
    1. Pre-scan     -- read + header-normalize the CSV (fatal on I/O error)
    2. Pre-snapshot -- capture every Device document before any write
    3. Rows         -- normalize, classify, apply, log; one row at a time
    4. Run record   -- allocate updateNumber = max + 1, create UpdateNNNN
    5. Summary      -- text report, JSON run report, exit status

A failing row is logged, counted in error_count and skipped; writes it
already made stay in place.  Only pre-scan, connection and pre-snapshot
failures abort the run before the Summary.  A failure after the rows were
applied (e.g. a run record name collision) still prints the Summary and
run report, then exits non-zero without a run record.
"""

from __future__ import annotations

import csv
import json
import logging
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import click

from device_registry_etl.checkout import (
    Clock,
    ReturnResult,
    check_out_new_device,
    retire_checked_out_device,
    timestamp,
    utcnow,
)
from device_registry_etl.classify import Classification, RejectedFieldChange, classify
from device_registry_etl.config import (
    PROFILES,
    CollectionNames,
    ConfigError,
    resolve_collections,
)
from device_registry_etl.models import Device, RunSnapshot
from device_registry_etl.normalize import (
    EXPECTED_HEADERS,
    DeviceCandidate,
    missing_required_columns,
    normalize_headers,
    normalize_row,
)
from device_registry_etl.shared import (
    DocumentExistsError,
    ImportCounters,
    RejectWriter,
    RowProcessingError,
    RunFatalError,
    write_run_report,
)
from device_registry_etl.store import DocumentStore, open_postgres_store

log = logging.getLogger(__name__)

UPDATE_NUMBER_FIELD = "updateNumber"


# ---------------------------------------------------------------------------
# Pre-scan
# ---------------------------------------------------------------------------

def read_csv_rows(csv_path: Path) -> list[dict[str, Any]]:
    """Read the export into header-normalized rows with trimmed values."""
    try:
        with csv_path.open(encoding="utf-8-sig", newline="") as fh:
            reader = csv.DictReader(fh)
            raw_fieldnames = reader.fieldnames or []
            missing = set(EXPECTED_HEADERS) - {h.strip() for h in raw_fieldnames}
            if missing:
                log.warning("Input is missing expected headers: %s", sorted(missing))
            return [normalize_headers(raw_row) for raw_row in reader]
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise RunFatalError(f"cannot read input {csv_path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Per-row apply
# ---------------------------------------------------------------------------

@dataclass
class RowResult:
    device_id: str
    is_new: bool = False
    changed: bool = False
    checked_out_by: str | None = None
    rejected: list[RejectedFieldChange] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    returned: ReturnResult | None = None

    @property
    def warnings(self) -> list[str]:
        return [r.message for r in self.rejected] + self.notes


def _apply_new(
    store: DocumentStore,
    collections: CollectionNames,
    candidate: DeviceCandidate,
    clock: Clock,
) -> RowResult:
    device = Device.from_candidate(candidate)
    store.set(collections.devices, device.device_id, device.to_document())
    if device.current_user is not None:
        check_out_new_device(store, collections, device, clock)
    return RowResult(
        device_id=device.device_id,
        is_new=True,
        checked_out_by=device.current_user,
    )


def _apply_existing(
    store: DocumentStore,
    collections: CollectionNames,
    candidate: DeviceCandidate,
    stored: Device,
    classification: Classification,
    clock: Clock,
) -> RowResult:
    result = RowResult(device_id=candidate.device_id, rejected=list(classification.rejected))

    if classification.is_updated:
        merged = classification.merged
        store.update(
            collections.devices,
            stored.device_id,
            {
                "attributeList": merged.attributes.to_document(),
                "isRetired": merged.is_retired,
            },
        )
        result.changed = True

    # Keyed off the stored currentUser; a CSV-asserted user never counts.
    if candidate.is_retired and stored.current_user:
        returned = retire_checked_out_device(store, collections, stored, clock)
        result.returned = returned
        result.notes.append(
            f"Device retired. User {returned.username} checked in and interaction closed."
        )
        if not returned.user_found:
            result.notes.append(
                f"No user record for {returned.username}; interaction counters not updated."
            )
        result.changed = True

    return result


def apply_row(
    store: DocumentStore,
    collections: CollectionNames,
    candidate: DeviceCandidate,
    clock: Clock = utcnow,
) -> RowResult:
    """Apply one candidate to the registry.  Any failure is a RowProcessingError.

    The row is classified before any write, so refused field changes ride
    along on the error when a later write fails.
    """
    rejected: tuple[RejectedFieldChange, ...] = ()
    try:
        doc = store.get(collections.devices, candidate.device_id)
        if doc is None:
            return _apply_new(store, collections, candidate, clock)
        stored = Device.from_document(doc)
        classification = classify(candidate, stored)
        rejected = classification.rejected
        return _apply_existing(store, collections, candidate, stored, classification, clock)
    except Exception as exc:
        raise RowProcessingError(candidate.device_id, exc, rejected) from exc


def _record_warnings(device_id: str, warnings: list[str], counters: ImportCounters) -> None:
    line = f"[WARN] Device {device_id}: {' '.join(warnings)}"
    counters.warnings.append(line)
    log.warning(line)


def _record_row(result: RowResult, counters: ImportCounters) -> None:
    if result.is_new:
        counters.new_devices += 1
        if result.checked_out_by:
            counters.checkouts_opened += 1
            log.info(
                "[NEW] Added device: %s (checked out by %s)",
                result.device_id, result.checked_out_by,
            )
        else:
            log.info("[NEW] Added device: %s", result.device_id)
        return

    counters.attempted_invalid_changes += len(result.rejected)
    if result.returned is not None:
        counters.interactions_closed += result.returned.interactions_closed

    warnings = result.warnings
    if warnings:
        _record_warnings(result.device_id, warnings, counters)
    if result.changed:
        counters.changed_devices += 1
        log.info("[UPDATE] Device %s: attributes/values changed.", result.device_id)
    elif not warnings:
        counters.unchanged_devices += 1
        log.info("[OK] Device %s: no changes.", result.device_id)


def process_row(
    store: DocumentStore,
    collections: CollectionNames,
    row: dict[str, Any],
    row_number: int,
    counters: ImportCounters,
    rejects: RejectWriter | None = None,
    clock: Clock = utcnow,
) -> RowResult | None:
    """Normalize, apply and log one CSV row.  Returns None for skipped or failed rows."""
    counters.rows_read += 1
    candidate = normalize_row(row)
    if candidate is None:
        missing = missing_required_columns(row)
        counters.rows_skipped += 1
        log.warning(
            "[SKIP] Row %d skipped: not all necessary values present to parse "
            "(missing %s).",
            row_number, ", ".join(missing),
        )
        if rejects is not None:
            rejects.write(row, f"missing_required:{','.join(missing)}")
        return None

    try:
        result = apply_row(store, collections, candidate, clock)
    except RowProcessingError as exc:
        counters.error_count += 1
        if exc.rejected:
            counters.attempted_invalid_changes += len(exc.rejected)
            _record_warnings(exc.device_id, [r.message for r in exc.rejected], counters)
        log.error("[ERROR] Device %s: %s", exc.device_id, exc.cause)
        if rejects is not None:
            rejects.write(row, f"row_error: {exc.cause}")
        return None

    _record_row(result, counters)
    return result


# ---------------------------------------------------------------------------
# Run orchestration
# ---------------------------------------------------------------------------

def next_update_number(store: DocumentStore, collection: str) -> int:
    last = store.top_by(collection, UPDATE_NUMBER_FIELD)
    if last is None:
        return 1
    return int(last.get(UPDATE_NUMBER_FIELD) or 0) + 1


def run_import(
    store: DocumentStore,
    rows: Iterable[dict[str, Any]],
    collections: CollectionNames,
    counters: ImportCounters | None = None,
    *,
    rejects: RejectWriter | None = None,
    clock: Clock = utcnow,
) -> RunSnapshot:
    """Run one import over ``rows`` and persist its run record.

    The snapshot stored in the run record is the Devices collection as it
    was before the first row was applied.
    """
    counters = counters if counters is not None else ImportCounters()

    try:
        pre_snapshot = store.list_all(collections.devices)
    except Exception as exc:
        raise RunFatalError(f"cannot read {collections.devices} before import: {exc}") from exc

    for row_number, row in enumerate(rows, start=1):
        process_row(store, collections, row, row_number, counters, rejects, clock)

    total_devices = store.count(collections.devices)
    run_record = RunSnapshot(
        update_number=next_update_number(store, collections.device_updates),
        update_date=timestamp(clock),
        total_devices=total_devices,
        new_devices=counters.new_devices,
        changed_devices=counters.changed_devices,
        snapshot=pre_snapshot or None,
    )
    try:
        store.create(collections.device_updates, run_record.doc_name, run_record.to_document())
    except DocumentExistsError as exc:
        # top_by only sees numeric updateNumber values.
        raise DocumentExistsError(
            f"{exc}; documents in {collections.device_updates} without a numeric "
            f"{UPDATE_NUMBER_FIELD} are ignored when numbering runs, so fix or "
            f"remove {run_record.doc_name} before the next import"
        ) from exc

    counters.total_devices = total_devices
    counters.update_number = run_record.update_number
    counters.update_doc_name = run_record.doc_name
    return run_record


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_import_report(
    ctrs: ImportCounters,
    collections: CollectionNames,
    dry_run: bool = False,
) -> str:
    lines = [
        "=" * 60,
        "Device Import Summary",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  rows read:                 {ctrs.rows_read}",
        f"  rows skipped:              {ctrs.rows_skipped}",
        f"  total devices after run:   {ctrs.total_devices}",
        f"  new devices added:         {ctrs.new_devices}",
        f"  devices updated:           {ctrs.changed_devices}",
        f"  devices unchanged:         {ctrs.unchanged_devices}",
        f"  attempted invalid changes: {ctrs.attempted_invalid_changes}",
        f"  checkouts opened:          {ctrs.checkouts_opened}",
        f"  interactions closed:       {ctrs.interactions_closed}",
        f"Errors encountered:          {ctrs.error_count}",
    ]
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings:
            lines.append(f"  {w}")
    if ctrs.update_doc_name:
        lines.append(
            f'\nSnapshot saved as document "{ctrs.update_doc_name}" '
            f'in collection "{collections.device_updates}".'
        )
    lines.append("=" * 60)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--csv-path", required=True, type=click.Path(path_type=Path), help="Device inventory CSV export")
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option(
    "--profile",
    type=click.Choice(sorted(PROFILES)),
    default=None,
    help="Collection-name profile (default: from --config, else 'test')",
)
@click.option("--config", "config_path", default=None, type=click.Path(path_type=Path), help="YAML collection config")
@click.option("--devices-collection", default=None)
@click.option("--users-collection", default=None)
@click.option("--interactions-collection", default=None)
@click.option("--device-updates-collection", default=None)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/device_import_rejects.csv",
    show_default=True,
    type=click.Path(path_type=Path),
)
@click.option("--dry-run", is_flag=True, default=False, help="Roll back every write at the end")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default="INFO",
    show_default=True,
)
def main(
    csv_path: Path,
    db_dsn: str,
    profile: str | None,
    config_path: Path | None,
    devices_collection: str | None,
    users_collection: str | None,
    interactions_collection: str | None,
    device_updates_collection: str | None,
    rejects_path: Path,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Reconcile a device inventory CSV export against the registry."""
    logging.basicConfig(level=log_level, format="%(levelname)s %(message)s")
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    click.echo(f"[{run_id}] Starting device import (dry_run={dry_run})")

    try:
        collections = resolve_collections(
            profile,
            config_path,
            {
                "devices": devices_collection,
                "users": users_collection,
                "interactions": interactions_collection,
                "device_updates": device_updates_collection,
            },
        )
    except ConfigError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    try:
        rows = read_csv_rows(csv_path)
    except RunFatalError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Pre-scan: {len(rows)} rows read from {csv_path}")

    counters = ImportCounters()
    rejects = RejectWriter(rejects_path)
    # Set when the rows were applied but the run could not be finalized.
    run_failure: Exception | None = None
    try:
        with open_postgres_store(db_dsn, dry_run=dry_run) as store:
            run_import(store, rows, collections, counters, rejects=rejects)
    except RunFatalError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    except Exception as exc:
        run_failure = exc
    finally:
        rejects.close()

    click.echo(build_import_report(counters, collections, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, dry_run,
        {"csv_path": str(csv_path), "devices_collection": collections.devices},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    click.echo(json.dumps(counters.to_dict(), indent=2, default=str))

    if run_failure is not None:
        click.echo(
            f"[{run_id}] FATAL: rows applied but no run record written: {run_failure}",
            err=True,
        )
        sys.exit(1)
    if counters.error_count > 0:
        click.echo(
            f"[{run_id}] Run completed with {counters.error_count} row error(s); exiting non-zero",
            err=True,
        )
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


if __name__ == "__main__":
    main()
