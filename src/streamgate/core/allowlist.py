"""
Table allow-list.

The gateway may only touch tables registered here. Identifiers are reduced
to [A-Za-z0-9_] before lookup, and the sanitized form must match an entry
exactly.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Iterator

_IDENTIFIER_STRIP = re.compile(r"[^A-Za-z0-9_]")


def sanitize_identifier(name: object) -> str:
    """Reduce a table or column name to the characters [A-Za-z0-9_]."""
    if name is None:
        return ""
    return _IDENTIFIER_STRIP.sub("", str(name))


@dataclass(frozen=True)
class AllowListEntry:
    """
    Access rules for one table.

    owner_column names the column holding the owning user's id on
    personal tables; non-admin writes are scoped to it.
    """

    table: str
    public_read: bool = False
    auth_required: bool = True
    admin_only: bool = False
    owner_column: str | None = None


class TableAllowList:
    """Immutable registry of the tables the gateway may query."""

    def __init__(self, entries: Iterable[AllowListEntry]) -> None:
        registry: dict[str, AllowListEntry] = {}
        for entry in entries:
            if sanitize_identifier(entry.table) != entry.table or not entry.table:
                raise ValueError(f"Invalid table name in allow-list: {entry.table!r}")
            registry[entry.table] = entry
        self._entries = registry

    def lookup(self, raw_table: object) -> AllowListEntry | None:
        """Sanitize a client-supplied table name and return its entry."""
        safe = sanitize_identifier(raw_table)
        if not safe:
            return None
        return self._entries.get(safe)

    def __contains__(self, table: object) -> bool:
        return isinstance(table, str) and table in self._entries

    def __iter__(self) -> Iterator[AllowListEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


def _public(table: str, owner_column: str | None = None) -> AllowListEntry:
    return AllowListEntry(
        table=table, public_read=True, auth_required=False, owner_column=owner_column
    )


def _private(table: str, owner_column: str | None = "user_id") -> AllowListEntry:
    return AllowListEntry(table=table, owner_column=owner_column)


DEFAULT_ALLOW_LIST = TableAllowList(
    [
        # Catalog and social tables readable by anyone
        _public("films"),
        _public("content_ratings"),
        _public("trending_content"),
        _public("playback_events"),
        _public("film_comments", owner_column="user_id"),
        _public("film_likes", owner_column="user_id"),
        _public("comment_likes", owner_column="user_id"),
        _public("user_profiles", owner_column="id"),
        _public("creator_profiles", owner_column="id"),
        # Per-user data
        _private("user_content_uploads"),
        _private("user_uploads"),
        _private("watch_history"),
        _private("watchlists"),
        _private("user_follows"),
        _private("user_preferences"),
        _private("notifications"),
        _private("playlists"),
        _private("playlist_items"),
        _private("watch_progress"),
        _private("content_reports"),
        _private("user_activity"),
        _private("watch_later"),
        _private("ai_generation_logs"),
        # Account tables
        AllowListEntry(table="users", admin_only=True, owner_column="id"),
        AllowListEntry(table="user_roles", admin_only=True, owner_column="user_id"),
    ]
)
