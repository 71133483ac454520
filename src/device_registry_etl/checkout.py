"""device_registry_etl.checkout

Checkout / return transitions triggered by the CSV import.

    check_out_new_device    -- a newly created Device arrives already held
                               by a user: open an Interaction, bump counters
    process_return          -- close the user's open Interactions for the
                               device and decrement their current counter
    retire_checked_out_device
                            -- a held Device is retired: clear currentUser,
                               then process_return for the stored user

Each store call stands alone; a failure part-way leaves the earlier writes
in place.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from device_registry_etl.config import CollectionNames
from device_registry_etl.ledger import (
    close_open_interactions,
    open_interaction,
    record_checkout,
    record_return,
)
from device_registry_etl.models import Device
from device_registry_etl.store import DocumentStore

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def timestamp(clock: Clock) -> str:
    return clock().isoformat()


@dataclass(frozen=True)
class ReturnResult:
    username: str
    interactions_closed: int
    user_found: bool


def check_out_new_device(
    store: DocumentStore,
    collections: CollectionNames,
    device: Device,
    clock: Clock = utcnow,
) -> str:
    """Open the checkout for a freshly created, already-held Device."""
    if device.current_user is None:
        raise ValueError(f"device {device.device_id} has no current user to check out")
    key = open_interaction(
        store, collections.interactions, device, device.current_user, timestamp(clock)
    )
    record_checkout(store, collections.users, device.current_user)
    return key


def process_return(
    store: DocumentStore,
    collections: CollectionNames,
    device_id: str,
    username: str,
    clock: Clock = utcnow,
) -> ReturnResult:
    stats = record_return(store, collections.users, username)
    closed = close_open_interactions(
        store, collections.interactions, device_id, username, timestamp(clock)
    )
    return ReturnResult(username=username, interactions_closed=closed, user_found=stats is not None)


def retire_checked_out_device(
    store: DocumentStore,
    collections: CollectionNames,
    stored: Device,
    clock: Clock = utcnow,
) -> ReturnResult:
    """Check the stored user back in for a Device being retired.

    ``stored`` is the Device as read before this row's writes; its
    currentUser is the one checked in, whatever the CSV row says.
    """
    if stored.current_user is None:
        raise ValueError(f"device {stored.device_id} is not checked out")
    store.update(
        collections.devices,
        stored.device_id,
        {"currentUser": None, "isAvailable": True},
    )
    return process_return(store, collections, stored.device_id, stored.current_user, clock)
