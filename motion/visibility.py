"""Visibility decisions for events, keyed on the viewer's relations to the creator."""

from __future__ import annotations

from collections.abc import Container, Iterable

RELATIONS = ("self", "connected", "followed", "none")

_ALLOWED: dict[str, frozenset[str]] = {
    "public": frozenset(RELATIONS),
    "mutuals": frozenset({"self", "connected"}),
    "friends": frozenset({"self", "connected"}),
    "followers": frozenset({"self", "followed"}),
    "private": frozenset({"self"}),
}


def can_view(visibility: str, relations: str | Iterable[str]) -> bool:
    """Return True when any of the viewer's ``relations`` may see the event.

    ``relations`` is a single relation name or every relation the viewer
    holds; a viewer who is both connected to and following a creator sees
    what either relation allows.
    """
    held = {relations} if isinstance(relations, str) else set(relations)
    unknown = held.difference(RELATIONS)
    if unknown:
        raise ValueError(f"Unknown relation {sorted(unknown)[0]!r}")
    allowed = _ALLOWED.get(visibility)
    if allowed is None:
        return False
    return not allowed.isdisjoint(held)


def relations_for(
    creator_id: str,
    user_id: str | None,
    connection_ids: Container[str],
    followed_ids: Container[str],
) -> frozenset[str]:
    """All relations ``user_id`` holds to ``creator_id``; ``{"none"}`` if there are none."""
    held = set()
    if user_id is not None and creator_id == user_id:
        held.add("self")
    if creator_id in connection_ids:
        held.add("connected")
    if creator_id in followed_ids:
        held.add("followed")
    return frozenset(held or {"none"})
