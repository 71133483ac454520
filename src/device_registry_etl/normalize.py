"""Normalization functions for device inventory CSV ingestion.

Turns one raw CSV record into a DeviceCandidate.  Nothing here touches the
document store.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Column names
# ---------------------------------------------------------------------------

COL_ID = "ID"
COL_MODEL = "Model"
COL_DEVICE_TYPE = "Device Type"
COL_PUBLISHER = "Publisher"
COL_OS = "OS"
COL_OS_VERSION = "OS Version"
COL_INV_NR = "Inventory Number"
COL_STICKER = "Sticker-Number (iOS)"
COL_CHECKED_OUT_BY = "Checked out by?"
COL_RETIRED = "Retired?"

EXPECTED_HEADERS = (
    COL_PUBLISHER, COL_MODEL, COL_DEVICE_TYPE, COL_OS, COL_OS_VERSION,
    COL_INV_NR, COL_STICKER, COL_CHECKED_OUT_BY, COL_ID, COL_RETIRED,
)

REQUIRED_COLUMNS = (COL_ID, COL_MODEL, COL_DEVICE_TYPE)

_RETIRED_TRUE_VALUES = {"yes", "true"}


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


def normalize_headers(raw: dict[str, str | None]) -> dict[str, str]:
    """Return a new dict with header keys and values whitespace-stripped.

    csv.DictReader fills short rows with None; those stay None so the
    column reads as absent.
    """
    return {
        k.strip(): (v.strip() if isinstance(v, str) else v)
        for k, v in raw.items()
        if k is not None
    }


# ---------------------------------------------------------------------------
# Rule 2: column presence
# ---------------------------------------------------------------------------

class Presence(enum.Enum):
    ABSENT = "absent"
    BLANK = "blank"
    VALUE = "value"


@dataclass(frozen=True)
class CsvField:
    """One CSV cell with its presence state kept explicit."""

    presence: Presence
    value: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, str | None], column: str) -> "CsvField":
        if column not in row or row[column] is None:
            return cls(Presence.ABSENT)
        v = trim(row[column])
        if v is None:
            return cls(Presence.BLANK)
        return cls(Presence.VALUE, v)

    @property
    def is_set(self) -> bool:
        return self.presence is Presence.VALUE

    def or_else(self, fallback: str | None) -> str | None:
        """Incoming value when set, otherwise the fallback."""
        return self.value if self.is_set else fallback


ABSENT = CsvField(Presence.ABSENT)


# ---------------------------------------------------------------------------
# Rule 3: retired flag
# ---------------------------------------------------------------------------

def parse_retired(value: str | None) -> bool:
    """True for a case-insensitive 'yes' or 'true'; anything else is False."""
    v = trim(value)
    if v is None:
        return False
    return v.lower() in _RETIRED_TRUE_VALUES


# ---------------------------------------------------------------------------
# Device candidate
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeviceCandidate:
    device_id: str
    device_name: str
    device_type: str
    publisher: CsvField = ABSENT
    os: CsvField = ABSENT
    os_version: CsvField = ABSENT
    inv_nr: CsvField = ABSENT
    sticker_number: CsvField = ABSENT
    is_retired: bool = False
    checked_out_by: str | None = None


def missing_required_columns(row: dict[str, str | None]) -> list[str]:
    """Required columns that are absent or blank in this row."""
    return [c for c in REQUIRED_COLUMNS if not CsvField.from_row(row, c).is_set]


def normalize_row(row: dict[str, str | None]) -> DeviceCandidate | None:
    """Map one CSV record to a DeviceCandidate.

    Returns None when a required column is missing; the caller logs the
    skip and moves on.
    """
    if missing_required_columns(row):
        return None
    return DeviceCandidate(
        device_id=trim(row[COL_ID]),  # type: ignore[arg-type]
        device_name=trim(row[COL_MODEL]),  # type: ignore[arg-type]
        device_type=trim(row[COL_DEVICE_TYPE]),  # type: ignore[arg-type]
        publisher=CsvField.from_row(row, COL_PUBLISHER),
        os=CsvField.from_row(row, COL_OS),
        os_version=CsvField.from_row(row, COL_OS_VERSION),
        inv_nr=CsvField.from_row(row, COL_INV_NR),
        sticker_number=CsvField.from_row(row, COL_STICKER),
        is_retired=parse_retired(row.get(COL_RETIRED)),
        checked_out_by=trim(row.get(COL_CHECKED_OUT_BY)),
    )
