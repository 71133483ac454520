"""device_registry_etl.classify

Change classification for one normalized CSV row against the stored Device.

Outcomes:
    new        -- no stored Device for the deviceID
    updated    -- a mutable attribute or the retired flag differs
    rejected   -- the row tried to change deviceName, deviceType, deviceID
                  or currentUser; one entry per field, never written
    unchanged  -- none of the above

``updated`` and ``rejected`` can both be present on the same row.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from device_registry_etl.models import Device, merge_attributes
from device_registry_etl.normalize import DeviceCandidate

CHECKOUT_GUIDANCE = "Please use the management app."


@dataclass(frozen=True)
class RejectedFieldChange:
    field_name: str
    stored: str | None
    incoming: str | None
    guidance: str | None = None

    @property
    def message(self) -> str:
        msg = f"Attempted change to {self.field_name} is not allowed."
        if self.guidance:
            msg = f"{msg} {self.guidance}"
        return msg


@dataclass(frozen=True)
class Classification:
    is_new: bool
    merged: Device | None = None
    rejected: tuple[RejectedFieldChange, ...] = field(default_factory=tuple)

    @property
    def is_updated(self) -> bool:
        return self.merged is not None


def _rejected_changes(
    candidate: DeviceCandidate,
    existing: Device,
) -> list[RejectedFieldChange]:
    checks = (
        ("deviceName", candidate.device_name, existing.attributes.device_name),
        ("deviceType", candidate.device_type, existing.attributes.device_type),
        ("deviceID", candidate.device_id, existing.device_id),
    )
    rejected = [
        RejectedFieldChange(name, stored, incoming)
        for name, incoming, stored in checks
        if incoming and incoming != stored
    ]
    if candidate.checked_out_by and candidate.checked_out_by != existing.current_user:
        rejected.append(
            RejectedFieldChange(
                "currentUser",
                existing.current_user,
                candidate.checked_out_by,
                guidance=CHECKOUT_GUIDANCE,
            )
        )
    return rejected


def classify(candidate: DeviceCandidate, existing: Device | None) -> Classification:
    """Classify one candidate against the stored Device, if any.

    The merged Device returned for an update keeps the stored immutable
    attributes and currentUser; only the mutable attributes and isRetired
    come from the row.
    """
    if existing is None:
        return Classification(is_new=True)

    rejected = tuple(_rejected_changes(candidate, existing))
    merged_attrs, attrs_changed = merge_attributes(existing.attributes, candidate)
    retired_changed = candidate.is_retired != existing.is_retired

    merged = None
    if attrs_changed or retired_changed:
        merged = replace(existing, attributes=merged_attrs, is_retired=candidate.is_retired)
    return Classification(is_new=False, merged=merged, rejected=rejected)
