"""Deduplication, ordering and change detection between snapshots."""

from collections.abc import Iterable, Mapping
from dataclasses import replace

from porttop.models import AnnotatedRow, ChangeState, ConnectionRecord, UniqueKey


def deduplicate(records: Iterable[ConnectionRecord]) -> list[ConnectionRecord]:
    """Drop records whose UniqueKey was already seen, keeping the first occurrence."""
    seen: set[UniqueKey] = set()
    unique = []
    for record in records:
        key = record.key
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def order_rows(rows: Iterable[AnnotatedRow]) -> list[AnnotatedRow]:
    """Sort by local port descending; ties keep enumeration order."""
    return sorted(rows, key=lambda row: row.local_port, reverse=True)


def diff(previous: Mapping[UniqueKey, str], current: Iterable[AnnotatedRow]) -> list[AnnotatedRow]:
    """
    Assign a ChangeState to every current row.

    A row is Changed when its key existed before with a different state,
    and New when its key is unseen and the previous snapshot was not empty.
    The very first load therefore highlights nothing.

    Args:
        previous: Key to state map of the prior snapshot.
        current: Rows of the new snapshot.
    """
    baseline = bool(previous)
    result = []
    for row in current:
        old_state = previous.get(row.key)
        if old_state is not None:
            change = ChangeState.CHANGED if old_state != row.state else ChangeState.NONE
        elif baseline:
            change = ChangeState.NEW
        else:
            change = ChangeState.NONE
        if change is not row.change_state:
            row = replace(row, change_state=change)
        result.append(row)
    return result
