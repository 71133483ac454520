"""device_registry_etl.ledger

Interaction ledger and per-user checkout counters.

Interactions are append-only: open_interaction() appends one record per
checkout and close_open_interactions() only ever sets dateOfReturn.  User
counters move together on checkout (+1 current, +1 total) and only the
current counter moves on return (-1, floored at 0).
"""

from __future__ import annotations

import logging

from device_registry_etl.models import Device, Interaction, UserStats
from device_registry_etl.store import DocumentStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Interactions
# ---------------------------------------------------------------------------

def open_interaction(
    store: DocumentStore,
    collection: str,
    device: Device,
    username: str,
    now: str,
) -> str:
    """Append an open Interaction for (device, username); return its key."""
    interaction = Interaction(
        device_id=device.device_id,
        device_name=device.attributes.device_name,
        device_inv_nr=device.attributes.inv_nr,
        username=username,
        date_of_checkout=now,
        date_of_return=None,
    )
    return store.add(collection, interaction.to_document())


def close_open_interactions(
    store: DocumentStore,
    collection: str,
    device_id: str,
    username: str,
    now: str,
) -> int:
    """Set dateOfReturn on every open Interaction for (device_id, username).

    More than one open record means an earlier run left the ledger
    inconsistent; all of them are closed.  Returns how many were closed.
    """
    matches = store.query(
        collection,
        {"deviceID": device_id, "username": username, "dateOfReturn": None},
    )
    if len(matches) > 1:
        log.warning(
            "Device %s: %d open interactions for %s; closing all.",
            device_id, len(matches), username,
        )
    for key, _doc in matches:
        store.update(collection, key, {"dateOfReturn": now})
    return len(matches)


# ---------------------------------------------------------------------------
# User stats
# ---------------------------------------------------------------------------

def record_checkout(store: DocumentStore, collection: str, username: str) -> UserStats:
    """+1 to both counters, creating the user at 1/1 when missing."""
    doc = store.get(collection, username)
    if doc is None:
        stats = UserStats(username=username, current_interactions=1, total_interactions=1)
        store.set(collection, username, stats.to_document())
        return stats
    prior = UserStats.from_document(username, doc)
    stats = UserStats(
        username=prior.username,
        current_interactions=prior.current_interactions + 1,
        total_interactions=prior.total_interactions + 1,
    )
    store.update(
        collection,
        username,
        {
            "currentInteractions": stats.current_interactions,
            "totalInteractions": stats.total_interactions,
        },
    )
    return stats


def record_return(store: DocumentStore, collection: str, username: str) -> UserStats | None:
    """-1 to currentInteractions, floored at 0.  A missing user is a no-op."""
    doc = store.get(collection, username)
    if doc is None:
        log.info("User %s has no stats record; nothing to decrement.", username)
        return None
    prior = UserStats.from_document(username, doc)
    current = max(prior.current_interactions - 1, 0)
    store.update(collection, username, {"currentInteractions": current})
    return UserStats(
        username=prior.username,
        current_interactions=current,
        total_interactions=prior.total_interactions,
    )
