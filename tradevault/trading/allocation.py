"""
Pure item allocation.

`allocate` picks concrete ledger rows for a list of requested item types, drawing
from as few custodians as possible. `resolve_handles` maps chosen rows onto a
custodian's live inventory right before an offer is built. Neither function
touches the ledger or the network.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from tradevault.domain.models import InventoryItem, ItemState, LedgerItem


def _group_by_custodian(candidates: Iterable[LedgerItem], used: set[str]) -> list[tuple[str, list[LedgerItem]]]:
    groups: dict[str, list[LedgerItem]] = {}
    for item in candidates:
        if item.state != ItemState.ACTIVE or item.asset_handle in used:
            continue
        groups.setdefault(item.custodian_id, []).append(item)
    # dicts keep first-seen order; the ranking sort below is stable on top of it.
    return list(groups.items())


def score_custodians(
    candidates: Iterable[LedgerItem],
    requested_type_ids: Sequence[str],
    used_handles: Iterable[str] = (),
) -> list[tuple[str, int]]:
    """(custodian_id, score) pairs in allocation order."""
    wanted = {str(t) for t in requested_type_ids}
    ranked = []
    for custodian_id, items in _group_by_custodian(candidates, set(used_handles)):
        ranked.append((custodian_id, sum(1 for i in items if i.type_id in wanted)))
    ranked.sort(key=lambda pair: pair[1], reverse=True)
    return ranked


def allocate(
    candidates: Iterable[LedgerItem],
    requested_type_ids: Sequence[str],
    used_handles: Iterable[str] = (),
) -> list[LedgerItem]:
    """
    Match each requested type id to one distinct Active ledger row.

    Custodians are scored by how many of their rows match any requested type and
    scanned highest score first. Rows that are not Active, or whose handle is used,
    are never chosen. Unfulfilled units are absent from the result, so callers
    detect a shortfall by comparing lengths. Output is deterministic for identical
    input order.
    """
    candidates = list(candidates)
    used = set(used_handles)
    by_custodian = dict(_group_by_custodian(candidates, used))
    ranked = [by_custodian[custodian_id] for custodian_id, _ in score_custodians(candidates, requested_type_ids, used)]

    claimed: set[int] = set()
    picked: list[LedgerItem] = []
    for type_id in requested_type_ids:
        type_id = str(type_id)
        match = None
        for items in ranked:
            for item in items:
                if item.id not in claimed and item.type_id == type_id:
                    match = item
                    break
            if match is not None:
                break
        if match is not None:
            claimed.add(match.id)
            picked.append(match)
    return picked


def resolve_handles(
    inventory: Sequence[InventoryItem],
    wanted: Sequence[LedgerItem],
    blocked: Iterable[str] = (),
) -> list[str | None]:
    """
    Pick a live inventory handle for each wanted row (aligned with `wanted`).

    A row keeps its own handle when the inventory still shows it. Otherwise the
    first inventory entry of the same type that is neither blocked nor already
    claimed in this pass is taken. Rows with no match get None.
    """
    blocked = set(blocked)
    present = {i.asset_handle for i in inventory}
    claimed: set[str] = set()
    out: list[str | None] = [None] * len(wanted)

    # Own handles first so a later row cannot steal an earlier row's exact match.
    for idx, row in enumerate(wanted):
        handle = row.asset_handle
        if handle in present and handle not in blocked and handle not in claimed:
            out[idx] = handle
            claimed.add(handle)

    for idx, row in enumerate(wanted):
        if out[idx] is not None:
            continue
        for entry in inventory:
            if entry.type_id != row.type_id:
                continue
            if entry.asset_handle in blocked or entry.asset_handle in claimed:
                continue
            out[idx] = entry.asset_handle
            claimed.add(entry.asset_handle)
            break
    return out
