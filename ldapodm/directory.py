"""
LDAP ODM directory access.

This module provides :py:class:`DirectoryEntry`, the mutable in-memory form of
one LDAP entry that the mapping engine edits, and :py:class:`LdapDirectory`,
the python-ldap backed transport that reads and writes entries.  Connection
settings come from ``settings.LDAP_SERVERS``.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from functools import wraps
from pathlib import Path
from typing import Any, cast

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldap import modlist
from ldap.controls import SimplePagedResultsControl
from ldap.dn import dn2str, str2dn
from ldap.ldapobject import LDAPObject

from ldapodm import ldap as ldap_module

from .exceptions import ConversionError, NotFound, SizeLimitExceeded
from .metadata import OBJECTCLASS_ATTRIBUTE
from .typing import AddModlist, LDAPData, ModifyModlist, RawAttributes, RawValues

#: python-ldap creates its constants and exceptions at import time, so the
#: module is typed loosely.  Always go through ``ldapodm.ldap`` so that
#: python-ldap-faker can patch ``initialize``.
ldap: Any = ldap_module

logger = logging.getLogger("django-ldapodm")

#: Ask the server to return no attributes at all (RFC 4511 section 4.5.1.8).
RETURN_NO_ATTRIBUTES = ["1.1"]


def normalize_dn(dn: str) -> str:
    """
    Return a canonical, case-folded form of ``dn`` suitable as a dictionary
    key.

    Args:
        dn: a distinguished name

    Raises:
        ConversionError: ``dn`` is not a valid distinguished name.

    Returns:
        The normalized DN.

    """
    try:
        return dn2str(str2dn(dn)).lower()
    except ldap.DECODING_ERROR as e:
        msg = f"'{dn}' is not a valid distinguished name"
        raise ConversionError(msg) from e


# -----------------------
# Entries
# -----------------------


class DirectoryEntry:
    """
    A mutable LDAP entry.

    Attribute names are case-insensitive; values are kept as ordered lists of
    raw ``bytes``.  The entry remembers the state it was last persisted in, so
    :py:meth:`modifications` can compute the minimal modlist that moves the
    directory from that state to the current one.

    Args:
        dn: The distinguished name of the entry.
        attributes: The raw attributes, as returned by python-ldap.

    """

    def __init__(self, dn: str, attributes: RawAttributes | None = None) -> None:
        self.dn = dn
        # lowercased name -> (name as first seen, values)
        self._attributes: dict[str, tuple[str, RawValues]] = {}
        for name, values in (attributes or {}).items():
            for value in values:
                self.add_value(name, value)
        self._original = self._snapshot()

    @classmethod
    def from_ldap(cls, data: LDAPData) -> "DirectoryEntry":
        return cls(data[0], data[1])

    def __repr__(self) -> str:
        return f"<DirectoryEntry: {self.dn}>"

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._attributes

    def _snapshot(self) -> dict[str, tuple[str, RawValues]]:
        return {k: (name, list(values)) for k, (name, values) in self._attributes.items()}

    @property
    def attribute_names(self) -> list[str]:
        return [name for name, _ in self._attributes.values()]

    def get(self, name: str) -> RawValues:
        """
        Return a copy of the raw values of an attribute; ``[]`` when absent.
        """
        try:
            return list(self._attributes[name.lower()][1])
        except KeyError:
            return []

    def get_first(self, name: str) -> bytes | None:
        values = self.get(name)
        return values[0] if values else None

    @property
    def object_classes(self) -> list[str]:
        return [v.decode("utf-8") for v in self.get(OBJECTCLASS_ATTRIBUTE)]

    def add_value(self, name: str, value: bytes) -> None:
        """
        Add one value to an attribute.  Adding a value that is already present
        is a no-op.
        """
        _, values = self._attributes.setdefault(name.lower(), (name, []))
        if value not in values:
            values.append(value)

    def remove_value(self, name: str, value: bytes) -> None:
        """
        Remove one value from an attribute.  The attribute disappears with its
        last value.
        """
        key = name.lower()
        if key not in self._attributes:
            return
        values = self._attributes[key][1]
        if value in values:
            values.remove(value)
        if not values:
            del self._attributes[key]

    def set_values(self, name: str, values: Iterable[bytes] | None) -> None:
        """
        Replace all values of an attribute; ``None`` or an empty iterable
        removes the attribute.
        """
        self._attributes.pop(name.lower(), None)
        for value in values or ():
            self.add_value(name, value)

    def as_dict(self) -> RawAttributes:
        return {name: list(values) for name, values in self._attributes.values()}

    def add_modlist(self) -> AddModlist:
        """
        Return the modlist for creating this entry with ``add_s``.
        """
        return modlist.addModlist(self.as_dict())

    def modifications(self) -> ModifyModlist:
        """
        Return the minimal modlist between the persisted and current state.

        Values that disappeared are deleted one by one and new values are
        added; an attribute with no remaining values is deleted as a whole.

        Returns:
            A python-ldap modlist, empty when nothing changed.

        """
        _modlist: ModifyModlist = []
        for key in dict.fromkeys([*self._original, *self._attributes]):
            name, old = self._original.get(key, (None, []))
            current_name, new = self._attributes.get(key, (None, []))
            name = cast("str", current_name or name)
            if old == new:
                continue
            if not new:
                _modlist.append((ldap.MOD_DELETE, name, None))
                continue
            removed = [v for v in old if v not in new]
            added = [v for v in new if v not in old]
            if removed:
                _modlist.append((ldap.MOD_DELETE, name, removed))
            if added:
                _modlist.append((ldap.MOD_ADD, name, added))
        return _modlist

    def commit(self) -> None:
        """
        Mark the current state as persisted.
        """
        self._original = self._snapshot()


# -----------------------
# Decorators
# -----------------------


def atomic(key: str = "read") -> Callable:
    """
    Decorator to wrap methods that need to talk to an LDAP server.

    If the current thread already holds a connection it is reused; otherwise
    one is opened for the duration of the call.

    Args:
        key: Either "read" or "write". Determines which LDAP server to use.

    Returns:
        A decorator that manages LDAP connection context for the wrapped method.

    """

    def real_decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> Any:
            if self.has_connection():
                # Ensure we're not currently in a wrapped function
                return func(self, *args, **kwargs)
            self.connect(key)
            try:
                retval = func(self, *args, **kwargs)
            finally:
                # We do this in a finally: branch so that the ldap
                # connection gets cleaned up no matter what happens in
                # `func()`.
                self.disconnect()
            return retval

        return wrapper

    return real_decorator


# -----------------------
# LdapDirectory
# -----------------------


class LdapDirectory:
    """
    The directory transport.

    This class handles connecting to the LDAP server and the raw add, modify,
    delete, lookup and search operations.  It knows nothing about models.

    This class is thread-safe -- it will use a different LDAP connection for
    each thread, because LDAP connections are not thread-safe.

    Args:
        server: The key into ``settings.LDAP_SERVERS``.

    Raises:
        ImproperlyConfigured: ``settings.LDAP_SERVERS`` is missing or has no
            such key.

    """

    def __init__(self, server: str = "default") -> None:
        self.logger = logger
        self.server = server
        try:
            self.config: dict[str, Any] = settings.LDAP_SERVERS[server]
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS has no key '{server}'"
            raise ImproperlyConfigured(msg) from e
        self.basedn: str | None = self.config.get("basedn")
        self.page_size: int = int(self.config.get("page_size", 100))
        # keys in this dictionary get manipulated by .connect() and .disconnect()
        self._ldap_objects: dict[threading.Thread, LDAPObject] = {}

    def __repr__(self) -> str:
        return f"<LdapDirectory: {self.server}>"

    # Connection management

    def has_connection(self) -> bool:
        return threading.current_thread() in self._ldap_objects

    def set_connection(self, obj: LDAPObject) -> None:
        self._ldap_objects[threading.current_thread()] = obj

    def remove_connection(self) -> None:
        del self._ldap_objects[threading.current_thread()]

    @property
    def connection(self) -> LDAPObject:
        """
        The current thread's LDAP connection object.
        """
        return self._ldap_objects[threading.current_thread()]

    def connect(self, key: str, dn: str | None = None, password: str | None = None) -> None:
        """
        Open the per-thread LDAP connection.  Used by the :py:func:`atomic`
        decorator.

        Args:
            key: Configuration key for the LDAP server: "read" or "write".
            dn: Optional bind DN.
            password: Optional password.

        """
        self.set_connection(self._connect(key, dn=dn, password=password))

    def disconnect(self) -> None:
        """
        Close the current thread's LDAP connection.
        """
        self.connection.unbind_s()
        self.remove_connection()

    def _check_file(self, label: str, filename: str) -> None:
        path = Path(filename)
        if not path.exists():
            msg = f"{label} file does not exist: {filename}"
            raise OSError(msg)
        if not path.is_file():
            msg = f"{label} file is not a file: {filename}"
            raise OSError(msg)

    def _connect(
        self, key: str, dn: str | None = None, password: str | None = None
    ) -> LDAPObject:
        """
        Create and return a new, bound LDAP connection object.

        Args:
            key: Configuration key for the LDAP server.
            dn: Optional bind DN.
            password: Optional password.

        Raises:
            ImproperlyConfigured: The server has no ``key`` block.
            ValueError: If the ``tls_verify`` value in the configuration is invalid.
            OSError: A configured certificate or key file is missing.

        Returns:
            A connected LDAPObject.

        """
        try:
            config = self.config[key]
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS['{self.server}'] has no '{key}' key"
            raise ImproperlyConfigured(msg) from e
        if not dn:
            dn = config["user"]
            password = config["password"]
        ldap_object = ldap.initialize(config["url"])
        if config.get("follow_referrals", False):
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)
        timeout = config.get("timeout", 15.0)
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(timeout))
        sizelimit = config.get("sizelimit", None)
        if sizelimit:
            ldap_object.set_option(ldap.OPT_SIZELIMIT, int(sizelimit))
        tls_verify = config.get("tls_verify", "never")
        if tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)
        elif tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        if tls_ca_certfile := config.get("tls_ca_certfile", None):
            self._check_file("CA Certificate", tls_ca_certfile)
            ldap_object.set_option(ldap.OPT_X_TLS_CACERTFILE, tls_ca_certfile)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)
        if config.get("use_starttls", True):
            ldap_object.start_tls_s()
        ldap_object.simple_bind_s(dn, password)
        return ldap_object

    # Writes

    @atomic(key="write")
    def add(self, entry: DirectoryEntry) -> None:
        """
        Create ``entry`` in the directory.
        """
        self.connection.add_s(entry.dn, entry.add_modlist())
        self.logger.info("ldapodm.directory.add dn=%s", entry.dn)

    @atomic(key="write")
    def modify(self, dn: str, _modlist: ModifyModlist) -> None:
        """
        Apply a modlist to an existing entry.

        Raises:
            NotFound: ``dn`` does not exist.

        """
        try:
            self.connection.modify_s(dn, _modlist)
        except ldap.NO_SUCH_OBJECT as e:
            msg = f"No entry with dn '{dn}'"
            raise NotFound(msg) from e
        self.logger.info("ldapodm.directory.modify dn=%s changes=%d", dn, len(_modlist))

    @atomic(key="write")
    def delete(self, dn: str) -> None:
        """
        Delete an entry.

        Raises:
            NotFound: ``dn`` does not exist.

        """
        try:
            self.connection.delete_s(dn)
        except ldap.NO_SUCH_OBJECT as e:
            msg = f"No entry with dn '{dn}'"
            raise NotFound(msg) from e
        self.logger.info("ldapodm.directory.delete dn=%s", dn)

    # Reads

    def _entries(self, rdata: list) -> list[DirectoryEntry]:
        # AD returns references at the end of results that we want to ignore
        return [
            DirectoryEntry(dn, attrs)
            for dn, attrs in rdata
            if dn is not None and isinstance(attrs, dict)
        ]

    @atomic(key="read")
    def lookup(self, dn: str, attributes: list[str] | None = None) -> DirectoryEntry:
        """
        Read one entry by its DN with a base-scoped search.

        Args:
            dn: The distinguished name.
            attributes: The attributes to return; all user attributes when
                ``None``.

        Raises:
            NotFound: ``dn`` does not exist.

        Returns:
            The entry.

        """
        try:
            data = self.connection.search_s(
                dn, ldap.SCOPE_BASE, "(objectClass=*)", attributes
            )
        except ldap.NO_SUCH_OBJECT as e:
            msg = f"No entry with dn '{dn}'"
            raise NotFound(msg) from e
        entries = self._entries(data)
        if not entries:
            msg = f"No entry with dn '{dn}'"
            raise NotFound(msg)
        self.logger.debug("ldapodm.directory.lookup dn=%s", dn)
        return entries[0]

    @atomic(key="read")
    def search(
        self,
        basedn: str,
        searchfilter: str,
        scope: int = ldap.SCOPE_SUBTREE,
        sizelimit: int = 0,
        attributes: list[str] | None = None,
    ) -> list[DirectoryEntry]:
        """
        Search the directory.

        Args:
            basedn: The base DN to search from.
            searchfilter: The LDAP search filter string.
            scope: LDAP search scope.
            sizelimit: Maximum number of results; 0 for the server's limit.
            attributes: List of attributes to retrieve.

        Raises:
            SizeLimitExceeded: The server stopped returning results at a size
                limit.

        Returns:
            The matching entries.  A missing base DN yields no entries.

        """
        try:
            if sizelimit:
                msgid = self.connection.search_ext(
                    basedn, scope, searchfilter, attributes, sizelimit=sizelimit
                )
                _, rdata, _, _ = self.connection.result3(msgid)
            else:
                rdata = self.connection.search_s(
                    basedn, scope, filterstr=searchfilter, attrlist=attributes
                )
        except ldap.SIZELIMIT_EXCEEDED as e:
            msg = f"Size limit exceeded searching {basedn} for {searchfilter}"
            raise SizeLimitExceeded(msg) from e
        except ldap.NO_SUCH_OBJECT:
            self.logger.debug("ldapodm.directory.search.no-base basedn=%s", basedn)
            return []
        return self._entries(rdata)

    def _get_pctrls(self, serverctrls) -> list[SimplePagedResultsControl]:
        """
        Look up the paged results controls among the returned server
        controls.  These carry the cookie for the next page.
        """
        return [
            c
            for c in serverctrls or []
            if c.controlType == SimplePagedResultsControl.controlType
        ]

    @atomic(key="read")
    def search_page(
        self,
        basedn: str,
        searchfilter: str,
        page_size: int = 100,
        cookie: bytes = b"",
        scope: int = ldap.SCOPE_SUBTREE,
        sizelimit: int = 0,
        attributes: list[str] | None = None,
    ) -> tuple[list[DirectoryEntry], bytes]:
        """
        Perform a single page of a paged search (RFC 2696).

        Args:
            basedn: The base DN to search from.
            searchfilter: The LDAP search filter string.
            page_size: Number of results per page.
            cookie: The cookie from the previous page; empty for the first page.
            scope: LDAP search scope.
            sizelimit: Maximum number of results to return.
            attributes: List of attributes to retrieve.

        Raises:
            SizeLimitExceeded: The server stopped returning results at a size
                limit.

        Returns:
            ``(entries, next_cookie)``; ``next_cookie`` is empty after the
            last page.

        """
        paging = SimplePagedResultsControl(True, size=page_size, cookie=cookie)  # noqa: FBT003
        try:
            msgid = self.connection.search_ext(
                basedn,
                scope,
                searchfilter,
                attributes,
                serverctrls=[paging],
                sizelimit=sizelimit,
            )
            _, rdata, _, serverctrls = self.connection.result3(msgid)
        except ldap.SIZELIMIT_EXCEEDED as e:
            msg = f"Size limit exceeded searching {basedn} for {searchfilter}"
            raise SizeLimitExceeded(msg) from e
        paged_controls = self._get_pctrls(serverctrls)
        next_cookie = b""
        if paged_controls and paged_controls[0].cookie:
            next_cookie = paged_controls[0].cookie
        return self._entries(rdata), next_cookie
