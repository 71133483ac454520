"""Unit tests for the import orchestrator, run against MemoryDocumentStore."""

from __future__ import annotations

import csv
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from device_registry_etl.config import PROFILES
from device_registry_etl.import_devices import (
    build_import_report,
    main,
    next_update_number,
    process_row,
    read_csv_rows,
    run_import,
)
from device_registry_etl.shared import (
    DocumentExistsError,
    ImportCounters,
    RejectWriter,
    RunFatalError,
)
from device_registry_etl.store import MemoryDocumentStore

COLS = PROFILES["test"]
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

HEADERS = [
    "Publisher", "Model", "Device Type", "OS", "OS Version", "Inventory Number",
    "Sticker-Number (iOS)", "Checked out by?", "ID", "Retired?",
]


def _clock():
    return T0


def _row(device_id="D-001", **overrides):
    row = {
        "Publisher": "Apple",
        "Model": "iPhone 12",
        "Device Type": "Phone",
        "OS": "iOS",
        "OS Version": "17.1",
        "Inventory Number": "INV-001",
        "Sticker-Number (iOS)": "S-12",
        "Checked out by?": "",
        "ID": device_id,
        "Retired?": "no",
    }
    row.update(overrides)
    return row


class RecordingStore(MemoryDocumentStore):
    """Memory store that records update() calls and can fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.updates: list[tuple[str, str, dict]] = []
        self.fail_update_keys: set[str] = set()
        self.fail_list_all = False

    def update(self, collection, key, fields):
        if key in self.fail_update_keys:
            raise RuntimeError(f"backend unavailable for {key}")
        self.updates.append((collection, key, dict(fields)))
        super().update(collection, key, fields)

    def list_all(self, collection):
        if self.fail_list_all:
            raise RuntimeError("connection reset")
        return super().list_all(collection)


@pytest.fixture
def store():
    return RecordingStore()


def _run(store, rows, counters=None, rejects=None):
    counters = counters if counters is not None else ImportCounters()
    snap = run_import(store, rows, COLS, counters, rejects=rejects, clock=_clock)
    return snap, counters


def _open_interactions(store, device_id, username):
    return store.query(
        COLS.interactions,
        {"deviceID": device_id, "username": username, "dateOfReturn": None},
    )


def _seed_checked_out(store, device_id="D-001", user="bob"):
    """Import a device already held by ``user`` in a prior run."""
    _run(store, [_row(device_id, **{"Checked out by?": user})])


# ---------------------------------------------------------------------------
# New devices
# ---------------------------------------------------------------------------

class TestNewDevice:
    def test_new_device_with_checkout(self, store):
        _, ctrs = _run(store, [_row(**{"Checked out by?": "alice"})])

        device = store.get(COLS.devices, "D-001")
        assert device["currentUser"] == "alice"
        assert device["isAvailable"] is False
        assert len(_open_interactions(store, "D-001", "alice")) == 1
        user = store.get(COLS.users, "alice")
        assert user["currentInteractions"] == 1
        assert user["totalInteractions"] == 1
        assert ctrs.new_devices == 1
        assert ctrs.checkouts_opened == 1

    def test_new_device_without_checkout(self, store):
        _, ctrs = _run(store, [_row()])
        device = store.get(COLS.devices, "D-001")
        assert device["currentUser"] is None
        assert device["isAvailable"] is True
        assert device["attributeList"]["deviceName"] == "iPhone 12"
        assert store.count(COLS.interactions) == 0
        assert store.count(COLS.users) == 0
        assert ctrs.new_devices == 1
        assert ctrs.changed_devices == 0

    def test_second_checkout_for_same_user_accumulates(self, store):
        _run(store, [
            _row("D-001", **{"Checked out by?": "alice"}),
            _row("D-002", **{"Checked out by?": "alice"}),
        ])
        user = store.get(COLS.users, "alice")
        assert user["currentInteractions"] == 2
        assert user["totalInteractions"] == 2

    def test_new_retired_device_is_stored_retired(self, store):
        _run(store, [_row(**{"Retired?": "TRUE"})])
        assert store.get(COLS.devices, "D-001")["isRetired"] is True


# ---------------------------------------------------------------------------
# Existing devices
# ---------------------------------------------------------------------------

class TestExistingDevice:
    def test_immutable_fields_rejected(self, store):
        _run(store, [_row()])
        _, ctrs = _run(store, [_row(Model="Pixel 8", **{"Device Type": "Tablet"})])

        attrs = store.get(COLS.devices, "D-001")["attributeList"]
        assert attrs["deviceName"] == "iPhone 12"
        assert attrs["deviceType"] == "Phone"
        assert ctrs.attempted_invalid_changes == 2
        assert ctrs.changed_devices == 0
        assert len(ctrs.warnings) == 1
        assert "deviceName" in ctrs.warnings[0]
        assert "deviceType" in ctrs.warnings[0]

    def test_checkout_change_rejected(self, store):
        _seed_checked_out(store, user="bob")
        _, ctrs = _run(store, [_row(**{"Checked out by?": "carol"})])

        assert store.get(COLS.devices, "D-001")["currentUser"] == "bob"
        assert ctrs.attempted_invalid_changes == 1
        assert "Please use the management app." in ctrs.warnings[0]
        assert store.count(COLS.interactions) == 1

    def test_attribute_update_single_write(self, store):
        _run(store, [_row()])
        store.updates.clear()
        _, ctrs = _run(store, [_row(OS="iPadOS", **{"OS Version": "18.0"})])

        device_updates = [u for u in store.updates if u[0] == COLS.devices]
        assert len(device_updates) == 1
        _, _, fields = device_updates[0]
        assert set(fields) == {"attributeList", "isRetired"}
        attrs = store.get(COLS.devices, "D-001")["attributeList"]
        assert attrs["os"] == "iPadOS"
        assert attrs["osVersion"] == "18.0"
        assert ctrs.changed_devices == 1

    def test_update_does_not_touch_current_user(self, store):
        _seed_checked_out(store, user="bob")
        _run(store, [_row(OS="iPadOS")])
        device = store.get(COLS.devices, "D-001")
        assert device["currentUser"] == "bob"
        assert device["isAvailable"] is False

    def test_blank_column_keeps_stored_value(self, store):
        _run(store, [_row()])
        _, ctrs = _run(store, [_row(Publisher="")])
        assert store.get(COLS.devices, "D-001")["attributeList"]["publisher"] == "Apple"
        assert ctrs.unchanged_devices == 1

    def test_unchanged_row_is_idempotent(self, store):
        _run(store, [_row()])
        store.updates.clear()
        _, ctrs = _run(store, [_row()])

        assert ctrs.changed_devices == 0
        assert ctrs.unchanged_devices == 1
        assert [u for u in store.updates if u[0] == COLS.devices] == []

    def test_retired_flag_change_without_user(self, store):
        _run(store, [_row()])
        _, ctrs = _run(store, [_row(**{"Retired?": "yes"})])
        device = store.get(COLS.devices, "D-001")
        assert device["isRetired"] is True
        assert ctrs.changed_devices == 1
        assert ctrs.warnings == []

    def test_rejection_does_not_block_allowed_update(self, store):
        _run(store, [_row()])
        _, ctrs = _run(store, [_row(Model="Pixel 8", OS="Android")])
        attrs = store.get(COLS.devices, "D-001")["attributeList"]
        assert attrs["os"] == "Android"
        assert attrs["deviceName"] == "iPhone 12"
        assert ctrs.changed_devices == 1
        assert ctrs.attempted_invalid_changes == 1


# ---------------------------------------------------------------------------
# Retirement / return
# ---------------------------------------------------------------------------

class TestRetirement:
    def test_retirement_closes_checkout(self, store):
        _seed_checked_out(store, user="bob")
        _, ctrs = _run(store, [_row(**{"Retired?": "yes"})])

        device = store.get(COLS.devices, "D-001")
        assert device["isRetired"] is True
        assert device["currentUser"] is None
        assert device["isAvailable"] is True
        [(_, interaction)] = store.query(COLS.interactions, {"deviceID": "D-001"})
        assert interaction["dateOfReturn"] == T0.isoformat()
        assert store.get(COLS.users, "bob")["currentInteractions"] == 0
        assert store.get(COLS.users, "bob")["totalInteractions"] == 1
        assert ctrs.changed_devices == 1
        assert ctrs.interactions_closed == 1
        assert "User bob checked in" in ctrs.warnings[0]
        assert ctrs.attempted_invalid_changes == 0

    def test_retirement_writes_after_attribute_update(self, store):
        _seed_checked_out(store, user="bob")
        store.updates.clear()
        _run(store, [_row(**{"Retired?": "yes"})])

        device_updates = [f for c, _, f in store.updates if c == COLS.devices]
        assert device_updates == [
            {
                "attributeList": store.get(COLS.devices, "D-001")["attributeList"],
                "isRetired": True,
            },
            {"currentUser": None, "isAvailable": True},
        ]

    def test_already_retired_still_held_device_is_returned(self, store):
        _seed_checked_out(store, user="bob")
        store.update(COLS.devices, "D-001", {"isRetired": True})
        store.updates.clear()

        _, ctrs = _run(store, [_row(**{"Retired?": "yes"})])

        device_updates = [f for c, _, f in store.updates if c == COLS.devices]
        assert device_updates == [{"currentUser": None, "isAvailable": True}]
        assert ctrs.changed_devices == 1

    def test_retirement_uses_stored_user_not_csv_user(self, store):
        _seed_checked_out(store, user="bob")
        _, ctrs = _run(store, [_row(**{"Retired?": "yes", "Checked out by?": "carol"})])
        assert _open_interactions(store, "D-001", "bob") == []
        assert store.count(COLS.users) == 1
        assert ctrs.attempted_invalid_changes == 1
        assert ctrs.changed_devices == 1

    def test_retirement_with_missing_user_record(self, store):
        _seed_checked_out(store, user="bob")
        store._coll(COLS.users).clear()
        _, ctrs = _run(store, [_row(**{"Retired?": "yes"})])
        assert store.get(COLS.devices, "D-001")["currentUser"] is None
        assert store.count(COLS.users) == 0
        assert ctrs.error_count == 0
        assert "No user record for bob" in ctrs.warnings[0]

    def test_second_retired_run_is_unchanged(self, store):
        _seed_checked_out(store, user="bob")
        _run(store, [_row(**{"Retired?": "yes"})])
        _, ctrs = _run(store, [_row(**{"Retired?": "yes"})])
        assert ctrs.changed_devices == 0
        assert ctrs.unchanged_devices == 1


# ---------------------------------------------------------------------------
# Skips and errors
# ---------------------------------------------------------------------------

class TestSkipsAndErrors:
    def test_missing_id_skipped(self, store, caplog):
        caplog.set_level(logging.WARNING)
        _, ctrs = _run(store, [_row(device_id="")])

        assert store.count(COLS.devices) == 0
        assert ctrs.rows_skipped == 1
        assert ctrs.new_devices == 0
        assert ctrs.changed_devices == 0
        assert ctrs.error_count == 0
        assert "[SKIP]" in caplog.text
        assert store.get(COLS.device_updates, "Update0001") is not None

    def test_skipped_row_written_to_rejects(self, store, tmp_path):
        rejects = RejectWriter(tmp_path / "rejects.csv")
        _run(store, [_row(Model="")], rejects=rejects)
        rejects.close()
        with (tmp_path / "rejects.csv").open(newline="") as fh:
            [rejected] = list(csv.DictReader(fh))
        assert rejected["_reject_reason"] == "missing_required:Model"

    def test_row_error_isolated(self, store, caplog):
        _run(store, [_row("D-001"), _row("D-002")])
        store.fail_update_keys.add("D-001")

        _, ctrs = _run(store, [_row("D-001", OS="Android"), _row("D-002", OS="Android")])

        assert ctrs.error_count == 1
        assert ctrs.changed_devices == 1
        assert store.get(COLS.devices, "D-002")["attributeList"]["os"] == "Android"
        assert "[ERROR] Device D-001" in caplog.text

    def test_partial_writes_not_rolled_back(self, store):
        _seed_checked_out(store, user="bob")
        # Interactions close after the device write; fail there.
        [(key, _)] = _open_interactions(store, "D-001", "bob")
        store.fail_update_keys.add(key)

        _, ctrs = _run(store, [_row(**{"Retired?": "yes"})])

        assert ctrs.error_count == 1
        device = store.get(COLS.devices, "D-001")
        assert device["isRetired"] is True
        assert device["currentUser"] is None
        assert len(_open_interactions(store, "D-001", "bob")) == 1

    def test_rejected_changes_counted_when_write_fails(self, store, caplog):
        _run(store, [_row()])
        store.fail_update_keys.add("D-001")

        _, ctrs = _run(store, [_row(Model="Other", **{"OS Version": "18"})])

        assert ctrs.error_count == 1
        assert ctrs.attempted_invalid_changes == 1
        assert len(ctrs.warnings) == 1
        assert "Attempted change to deviceName is not allowed." in ctrs.warnings[0]
        assert "[ERROR] Device D-001" in caplog.text

    def test_malformed_stored_device_is_row_error(self, store):
        store.set(COLS.devices, "D-001", {"deviceID": "D-001"})
        _, ctrs = _run(store, [_row()])
        assert ctrs.error_count == 1
        assert ctrs.new_devices == 0

    def test_pre_snapshot_failure_is_fatal(self, store):
        store.fail_list_all = True
        with pytest.raises(RunFatalError):
            _run(store, [_row()])
        assert store.count(COLS.devices) == 0
        assert store.count(COLS.device_updates) == 0


# ---------------------------------------------------------------------------
# Run snapshots
# ---------------------------------------------------------------------------

class TestRunSnapshot:
    def test_sequential_numbering(self, store):
        names = [_run(store, [_row()])[0].doc_name for _ in range(3)]
        assert names == ["Update0001", "Update0002", "Update0003"]
        assert [d["updateNumber"] for d in store.list_all(COLS.device_updates)] == [1, 2, 3]

    def test_numbering_continues_after_highest(self, store):
        store.set(COLS.device_updates, "Update0041", {"updateNumber": 41})
        assert next_update_number(store, COLS.device_updates) == 42
        snap, ctrs = _run(store, [])
        assert snap.doc_name == "Update0042"
        assert ctrs.update_doc_name == "Update0042"

    def test_numbering_past_four_digits(self, store):
        store.set(COLS.device_updates, "Update9999", {"updateNumber": 9999})
        snap, _ = _run(store, [])
        assert snap.doc_name == "Update10000"

    def test_unnumbered_run_record_collision_names_the_cause(self, store):
        store.set(COLS.device_updates, "Update0001", {"note": "hand-made"})

        with pytest.raises(DocumentExistsError, match="without a numeric updateNumber"):
            _run(store, [_row()])

        assert store.get(COLS.devices, "D-001") is not None
        assert store.get(COLS.device_updates, "Update0001") == {"note": "hand-made"}

    def test_empty_registry_snapshot_is_null(self, store):
        _run(store, [_row()])
        doc = store.get(COLS.device_updates, "Update0001")
        assert doc["snapshot"] is None
        assert doc["totalDevices"] == 1
        assert doc["newDevices"] == 1
        assert doc["changedDevices"] == 0
        assert doc["updateDate"] == T0.isoformat()

    def test_snapshot_taken_before_rows(self, store):
        _run(store, [_row("D-001")])
        _run(store, [_row("D-001", OS="Android"), _row("D-002")])

        doc = store.get(COLS.device_updates, "Update0002")
        assert [d["deviceID"] for d in doc["snapshot"]] == ["D-001"]
        assert doc["snapshot"][0]["attributeList"]["os"] == "iOS"
        assert doc["totalDevices"] == 2
        assert doc["newDevices"] == 1
        assert doc["changedDevices"] == 1

    def test_changed_counted_once_per_row(self, store):
        _seed_checked_out(store, user="bob")
        _, ctrs = _run(store, [_row(OS="Android", **{"Retired?": "yes"})])
        assert ctrs.changed_devices == 1


# ---------------------------------------------------------------------------
# Report / CSV / CLI
# ---------------------------------------------------------------------------

class TestReport:
    def test_report_lists_counters_and_warnings(self):
        ctrs = ImportCounters(
            total_devices=5, new_devices=1, changed_devices=2,
            attempted_invalid_changes=3, error_count=1,
            update_doc_name="Update0007",
            warnings=["[WARN] Device D-1: Attempted change to deviceName is not allowed."],
        )
        report = build_import_report(ctrs, COLS)
        assert "total devices after run:   5" in report
        assert "attempted invalid changes: 3" in report
        assert "Errors encountered:          1" in report
        assert "[WARN] Device D-1" in report
        assert '"Update0007" in collection "DevicesUpdatesTest"' in report


def _write_csv(path: Path, rows: list[dict]) -> Path:
    with path.open("w", newline="", encoding="utf-8") as fh:
        w = csv.DictWriter(fh, fieldnames=HEADERS)
        w.writeheader()
        w.writerows(rows)
    return path


class TestReadCsvRows:
    def test_reads_and_trims(self, tmp_path):
        path = _write_csv(tmp_path / "d.csv", [_row(OS="  iOS  ")])
        [row] = read_csv_rows(path)
        assert row["OS"] == "iOS"
        assert row["ID"] == "D-001"

    def test_bom_header(self, tmp_path):
        path = tmp_path / "d.csv"
        path.write_text("\ufeffID,Model,Device Type\nD-1,iPhone,Phone\n", encoding="utf-8")
        assert read_csv_rows(path) == [{"ID": "D-1", "Model": "iPhone", "Device Type": "Phone"}]

    def test_missing_file_is_fatal(self, tmp_path):
        with pytest.raises(RunFatalError, match="cannot read input"):
            read_csv_rows(tmp_path / "missing.csv")


class TestCli:
    def test_missing_csv_exits_fatal(self, tmp_path):
        runner = CliRunner()
        result = runner.invoke(main, [
            "--csv-path", str(tmp_path / "missing.csv"),
            "--db-dsn", "postgresql://unused",
        ])
        assert result.exit_code == 1
        assert "FATAL" in result.output

    def test_connection_failure_exits_fatal(self, tmp_path):
        path = _write_csv(tmp_path / "d.csv", [_row()])

        @contextmanager
        def _refuse(dsn, dry_run=False):
            raise RunFatalError("cannot connect to document store: refused")
            yield  # pragma: no cover

        with patch("device_registry_etl.import_devices.open_postgres_store", _refuse):
            result = CliRunner().invoke(main, ["--csv-path", str(path), "--db-dsn", "x"])
        assert result.exit_code == 1
        assert "cannot connect" in result.output

    def test_full_run_against_memory_store(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = _write_csv(tmp_path / "d.csv", [_row(**{"Checked out by?": "alice"}), _row(device_id="")])
        mem = MemoryDocumentStore()

        @contextmanager
        def _open(dsn, dry_run=False):
            yield mem

        with patch("device_registry_etl.import_devices.open_postgres_store", _open):
            result = CliRunner().invoke(main, [
                "--csv-path", str(path),
                "--db-dsn", "x",
                "--profile", "production",
                "--run-id", "run-1",
            ])

        assert result.exit_code == 0, result.output
        assert "Update0001" in result.output
        assert mem.get("Devices", "D-001")["currentUser"] == "alice"
        assert mem.count("interactions") == 1
        report = json.loads((tmp_path / "artifacts" / "reports" / "run-1.json").read_text())
        assert report["counters"]["new_devices"] == 1
        assert report["counters"]["rows_skipped"] == 1

    def test_row_errors_exit_non_zero_after_summary(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = _write_csv(tmp_path / "d.csv", [_row()])
        mem = MemoryDocumentStore()
        mem.set("DevicesTest", "D-001", {"deviceID": "D-001"})

        @contextmanager
        def _open(dsn, dry_run=False):
            yield mem

        with patch("device_registry_etl.import_devices.open_postgres_store", _open):
            result = CliRunner().invoke(main, ["--csv-path", str(path), "--db-dsn", "x"])

        assert result.exit_code == 1
        assert "Device Import Summary" in result.output
        assert "1 row error(s)" in result.output

    def test_run_record_failure_still_prints_summary(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = _write_csv(tmp_path / "d.csv", [_row()])
        mem = MemoryDocumentStore()
        mem.set("DevicesUpdatesTest", "Update0001", {"note": "hand-made"})

        @contextmanager
        def _open(dsn, dry_run=False):
            yield mem

        with patch("device_registry_etl.import_devices.open_postgres_store", _open):
            result = CliRunner().invoke(main, [
                "--csv-path", str(path), "--db-dsn", "x", "--run-id", "run-2",
            ])

        assert result.exit_code == 1
        assert mem.get("DevicesTest", "D-001") is not None
        assert "Device Import Summary" in result.output
        assert "new devices added:         1" in result.output
        assert "no run record written" in result.output
        assert "without a numeric updateNumber" in result.output
        report = json.loads((tmp_path / "artifacts" / "reports" / "run-2.json").read_text())
        assert report["counters"]["new_devices"] == 1
        assert report["counters"]["update_doc_name"] is None
