# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""
Reconciliation Rules

Purpose:
    Turn a presence snapshot into the needed-set of registry keys.

Layer: domain/services

Notes:
    Topics that are not ``entity:<SYMBOL>`` are ignored, as are presence
    entries without a user id or with no data types.
"""
from __future__ import annotations

from demand_refresh.domain.entities.presence import DemandKey, PresenceSnapshot


def flatten_snapshot(snapshot: PresenceSnapshot) -> frozenset[DemandKey]:
    """Return every ``(user_id, symbol, data_type)`` demanded in the snapshot.

    The same user present on several consumers (tabs, devices) collapses into
    one key per data type.
    """
    needed: set[DemandKey] = set()
    for topic in snapshot:
        symbol = topic.symbol
        if symbol is None:
            continue
        for presence in topic.presences:
            if not presence.user_id:
                continue
            for data_type in presence.data_types:
                if data_type:
                    needed.add(DemandKey(presence.user_id, symbol, data_type))
    return frozenset(needed)
