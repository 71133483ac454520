"""device_registry_etl.models

Typed views of the documents kept in the registry collections.

Every model converts to and from the camelCase document layout used in the
store.  from_document() raises MalformedDocumentError instead of letting a
KeyError/TypeError escape, so a corrupt stored record shows up as a clear
row-level error.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any

from device_registry_etl.normalize import DeviceCandidate
from device_registry_etl.shared import MalformedDocumentError

# Attributes the CSV import may overwrite.  deviceName and deviceType are
# fixed at creation.
MUTABLE_ATTRIBUTES = ("publisher", "os", "os_version", "inv_nr", "sticker_number")


def _optional_str(doc: dict[str, Any], key: str) -> str | None:
    value = doc.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedDocumentError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _required_str(doc: dict[str, Any], key: str) -> str:
    value = _optional_str(doc, key)
    if value is None:
        raise MalformedDocumentError(f"missing required field {key!r}")
    return value


def _int_field(doc: dict[str, Any], key: str) -> int:
    value = doc.get(key) or 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedDocumentError(f"{key} must be numeric, got {value!r}")
    return int(value)


# ---------------------------------------------------------------------------
# Device
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeviceAttributes:
    device_name: str
    device_type: str
    inv_nr: str | None = None
    publisher: str | None = None
    os: str | None = None
    os_version: str | None = None
    sticker_number: str | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "invNr": self.inv_nr,
            "deviceName": self.device_name,
            "deviceType": self.device_type,
            "publisher": self.publisher,
            "os": self.os,
            "osVersion": self.os_version,
            "stickerNumber": self.sticker_number,
        }

    @classmethod
    def from_document(cls, doc: Any) -> "DeviceAttributes":
        if not isinstance(doc, dict):
            raise MalformedDocumentError("attributeList must be a mapping")
        return cls(
            device_name=_required_str(doc, "deviceName"),
            device_type=_required_str(doc, "deviceType"),
            inv_nr=_optional_str(doc, "invNr"),
            publisher=_optional_str(doc, "publisher"),
            os=_optional_str(doc, "os"),
            os_version=_optional_str(doc, "osVersion"),
            sticker_number=_optional_str(doc, "stickerNumber"),
        )


@dataclass(frozen=True)
class Device:
    device_id: str
    attributes: DeviceAttributes
    is_retired: bool = False
    current_user: str | None = None

    @property
    def is_available(self) -> bool:
        return self.current_user is None

    def to_document(self) -> dict[str, Any]:
        return {
            "deviceID": self.device_id,
            "isRetired": self.is_retired,
            "currentUser": self.current_user,
            "isAvailable": self.is_available,
            "attributeList": self.attributes.to_document(),
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Device":
        if "attributeList" not in doc:
            raise MalformedDocumentError("missing required field 'attributeList'")
        is_retired = doc.get("isRetired", False)
        if not isinstance(is_retired, bool):
            raise MalformedDocumentError(f"isRetired must be a boolean, got {is_retired!r}")
        return cls(
            device_id=_required_str(doc, "deviceID"),
            attributes=DeviceAttributes.from_document(doc["attributeList"]),
            is_retired=is_retired,
            # An empty string from an older writer means nobody holds it.
            current_user=_optional_str(doc, "currentUser") or None,
        )

    @classmethod
    def from_candidate(cls, candidate: DeviceCandidate) -> "Device":
        """Build a brand-new Device, checked out when the row names a user."""
        return cls(
            device_id=candidate.device_id,
            attributes=DeviceAttributes(
                device_name=candidate.device_name,
                device_type=candidate.device_type,
                inv_nr=candidate.inv_nr.value,
                publisher=candidate.publisher.value,
                os=candidate.os.value,
                os_version=candidate.os_version.value,
                sticker_number=candidate.sticker_number.value,
            ),
            is_retired=candidate.is_retired,
            current_user=candidate.checked_out_by,
        )


def merge_attributes(
    existing: DeviceAttributes,
    incoming: DeviceCandidate,
) -> tuple[DeviceAttributes, bool]:
    """Overlay the candidate's mutable attributes onto the stored ones.

    A blank or absent column keeps the stored value.  Returns the merged
    attributes and whether any field differs from ``existing``.
    """
    merged = replace(
        existing,
        **{
            name: getattr(incoming, name).or_else(getattr(existing, name))
            for name in MUTABLE_ATTRIBUTES
        },
    )
    changed = any(
        getattr(merged, f.name) != getattr(existing, f.name)
        for f in fields(DeviceAttributes)
    )
    return merged, changed


# ---------------------------------------------------------------------------
# Interaction
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Interaction:
    device_id: str
    device_name: str
    device_inv_nr: str | None
    username: str
    date_of_checkout: str
    date_of_return: str | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "deviceName": self.device_name,
            "deviceID": self.device_id,
            "deviceInvNr": self.device_inv_nr,
            "username": self.username,
            "dateOfCheckout": self.date_of_checkout,
            "dateOfReturn": self.date_of_return,
        }


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UserStats:
    username: str
    current_interactions: int = 0
    total_interactions: int = 0

    def to_document(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "currentInteractions": self.current_interactions,
            "totalInteractions": self.total_interactions,
        }

    @classmethod
    def from_document(cls, username: str, doc: dict[str, Any]) -> "UserStats":
        return cls(
            username=_optional_str(doc, "username") or username,
            current_interactions=_int_field(doc, "currentInteractions"),
            total_interactions=_int_field(doc, "totalInteractions"),
        )


# ---------------------------------------------------------------------------
# Run snapshot
# ---------------------------------------------------------------------------

def update_doc_name(update_number: int) -> str:
    """'Update' + number zero-padded to 4 digits; wider numbers are kept whole."""
    return f"Update{update_number:04d}"


@dataclass(frozen=True)
class RunSnapshot:
    update_number: int
    update_date: str
    total_devices: int
    new_devices: int
    changed_devices: int
    snapshot: list[dict[str, Any]] | None

    @property
    def doc_name(self) -> str:
        return update_doc_name(self.update_number)

    def to_document(self) -> dict[str, Any]:
        return {
            "changedDevices": self.changed_devices,
            "newDevices": self.new_devices,
            "snapshot": self.snapshot,
            "totalDevices": self.total_devices,
            "updateDate": self.update_date,
            "updateNumber": self.update_number,
        }
