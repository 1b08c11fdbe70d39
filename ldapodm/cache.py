"""
The per-session identity cache.
"""

import logging

from .directory import DirectoryEntry, normalize_dn

logger = logging.getLogger("django-ldapodm")


class EntryCache:
    """
    Maps distinguished names to the :py:class:`~ldapodm.directory.DirectoryEntry`
    last read or written for them in one session.

    Keys are normalized with :py:func:`~ldapodm.directory.normalize_dn`, so
    ``uid=Foo, ou=People`` and ``UID=foo,ou=people`` share a slot.  Storing
    replaces the previous entry; entries are never merged.

    An ``EntryCache`` belongs to a single session and is not thread-safe.
    """

    def __init__(self) -> None:
        self._entries: dict[str, DirectoryEntry] = {}

    def __repr__(self) -> str:
        return f"<EntryCache: {len(self)} entries>"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, dn: str) -> bool:
        return normalize_dn(dn) in self._entries

    def store(self, dn: str, entry: DirectoryEntry) -> None:
        self._entries[normalize_dn(dn)] = entry

    def retrieve(self, dn: str) -> DirectoryEntry | None:
        entry = self._entries.get(normalize_dn(dn))
        if entry is not None:
            logger.debug("ldapodm.cache.hit dn=%s", dn)
        return entry

    def remove(self, dn: str) -> None:
        self._entries.pop(normalize_dn(dn), None)

    def clear(self) -> None:
        self._entries.clear()
