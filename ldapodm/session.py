"""
LDAP ODM sessions.

A :py:class:`SessionFactory` is built once at startup from the list of model
classes; it owns the frozen :py:class:`~ldapodm.metadata.MetadataRegistry`,
the :py:class:`~ldapodm.engine.MappingEngine` and the
:py:class:`~ldapodm.directory.LdapDirectory` transports, all of which are
safe to share between threads.

A :py:class:`Session` is one unit of work.  It owns an
:py:class:`~ldapodm.cache.EntryCache` and an identity map of the records it
has materialized, so that a DN yields the same record object for the
lifetime of the session.  Sessions must not be shared between threads.

Example:
    .. code-block:: python

        factory = SessionFactory([Person, Group])
        with factory.open_session() as session:
            person = session.lookup("uid=alex,ou=people,dc=example,dc=com")
            person.surname = "Mathieu"
            session.update(person)
"""

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from .cache import EntryCache
from .directory import RETURN_NO_ATTRIBUTES, DirectoryEntry, LdapDirectory, ldap, normalize_dn
from .engine import MappingEngine
from .exceptions import ConversionError, NotFound
from .filters import Filter, FilterBuilder
from .metadata import ClassMetadata, MetadataRegistry
from .paging import PagedSearch

if TYPE_CHECKING:
    from .models import Model

logger = logging.getLogger("django-ldapodm")


class SessionFactory:
    """
    Args:
        models: The model classes to map, or an already built registry.

    Keyword Args:
        directory: The transport to use for every model.  By default each
            model uses an :py:class:`~ldapodm.directory.LdapDirectory` for its
            ``Meta.ldap_server``.
        server: The ``settings.LDAP_SERVERS`` key used for lookups that do
            not name a model.

    """

    def __init__(
        self,
        models: "Iterable[type[Model]] | MetadataRegistry",
        directory: LdapDirectory | None = None,
        server: str = "default",
    ) -> None:
        if isinstance(models, MetadataRegistry):
            registry = models
        else:
            registry = MetadataRegistry(models)
        if not registry.frozen:
            registry.freeze()
        self.registry = registry
        self.engine = MappingEngine(registry)
        self.server = server
        self._directory = directory
        self._directories: dict[str, LdapDirectory] = {}

    def __repr__(self) -> str:
        return f"<SessionFactory: {len(self.registry)} models>"

    def directory_for(self, metadata: ClassMetadata | None = None) -> LdapDirectory:
        """
        Return the transport for a model, or the default transport.

        Raises:
            ImproperlyConfigured: The model's LDAP server is not configured.

        """
        if self._directory is not None:
            return self._directory
        server = metadata.ldap_server if metadata is not None else self.server
        if server not in self._directories:
            self._directories[server] = LdapDirectory(server)
        return self._directories[server]

    def filter_builder(self, model: type["Model"]) -> FilterBuilder:
        """
        Return a :py:class:`~ldapodm.filters.FilterBuilder` for ``model``.

        Raises:
            MappingError: ``model`` is not registered.

        """
        return FilterBuilder(self.registry.get(model), self.registry)

    def open_session(self) -> "Session":
        return Session(self)


class Session:
    """
    One unit of work against the directory.

    Args:
        factory: The factory that opened this session.

    """

    def __init__(self, factory: SessionFactory) -> None:
        self.factory = factory
        self.registry = factory.registry
        self.engine = factory.engine
        self.cache = EntryCache()
        self._records: dict[str, Model] = {}
        self.closed = False

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<Session: {state}, {len(self.cache)} cached entries>"

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """
        End the unit of work: forget all cached entries and records.
        """
        self.cache.clear()
        self._records.clear()
        self.closed = True

    def _check_open(self) -> None:
        if self.closed:
            msg = f"{self!r} is closed"
            raise RuntimeError(msg)

    def _directory(self, model: type["Model"] | None = None) -> LdapDirectory:
        metadata = self.registry.get(model) if model is not None else None
        return self.factory.directory_for(metadata)

    def filter_builder(self, model: type["Model"]) -> FilterBuilder:
        return self.factory.filter_builder(model)

    # Identity map

    def _remember(self, dn: str, record: "Model", entry: DirectoryEntry) -> None:
        self.cache.store(dn, entry)
        self._records[normalize_dn(dn)] = record

    def _forget(self, dn: str) -> None:
        self.cache.remove(dn)
        self._records.pop(normalize_dn(dn), None)

    def _known_record(self, dn: str, model: type["Model"] | None) -> "Model | None":
        record = self._records.get(normalize_dn(dn))
        if record is not None and (model is None or isinstance(record, model)):
            return record
        return None

    def _materialize(self, entry: DirectoryEntry, model: type["Model"] | None) -> "Model":
        record = self._known_record(entry.dn, model)
        if record is not None:
            return record
        record = self.engine.instantiate(entry, model)
        # Register before populating so that reference cycles end here
        self._records[normalize_dn(entry.dn)] = record
        try:
            self.engine.populate(record, entry, self._resolve_reference)
        except Exception:
            self._records.pop(normalize_dn(entry.dn), None)
            raise
        return record

    def _resolve_reference(self, dn: str, model: type["Model"]) -> "Model":
        try:
            return self.lookup(dn, model=model)
        except NotFound:
            # Dangling references become blank records carrying only the DN
            logger.warning(
                "ldapodm.session.reference.dangling dn=%s model=%s", dn, model.__name__
            )
            return model._new_blank(dn)

    def _load_entry(self, dn: str, model: type["Model"] | None = None) -> DirectoryEntry:
        entry = self.cache.retrieve(dn)
        if entry is None:
            entry = self._directory(model).lookup(dn)
            self.cache.store(dn, entry)
        return entry

    def _require_dn(self, record: "Model") -> tuple[ClassMetadata, str]:
        metadata = self.registry.get(type(record))
        dn = metadata.get_identifier(record)
        if dn is None:
            msg = f"{record!r} has no value for its primary key '{metadata.identifier}'"
            raise ConversionError(msg)
        return metadata, dn

    # Writes

    def bind(self, record: "Model") -> str:
        """
        Create ``record`` in the directory.

        Raises:
            MappingError: The record's model is not registered.
            ConversionError: A property cannot be encoded, or the primary key
                is unset.

        Returns:
            The DN of the new entry.

        """
        self._check_open()
        metadata, _ = self._require_dn(record)
        entry = self.engine.to_entry(record)
        self._directory(type(record)).add(entry)
        entry.commit()
        metadata.set_identifier(record, entry.dn)
        self._remember(entry.dn, record, entry)
        logger.info("ldapodm.session.bind dn=%s", entry.dn)
        return entry.dn

    def update(self, record: "Model") -> None:
        """
        Write the changed properties of ``record`` to its existing entry.

        The record is merged into the entry last read or written in this
        session (read from the directory if there is none) and only the
        resulting modifications are sent.  When nothing changed, no request
        is made.

        Raises:
            NotFound: The record's entry does not exist.

        """
        self._check_open()
        _, dn = self._require_dn(record)
        model = type(record)
        entry = self._load_entry(dn, model)
        self.engine.to_entry(record, entry)
        modifications = entry.modifications()
        if not modifications:
            logger.debug("ldapodm.session.update.no-changes dn=%s", dn)
            self._remember(dn, record, entry)
            return
        try:
            self._directory(model).modify(dn, modifications)
        except Exception:
            self._forget(dn)
            raise
        entry.commit()
        self._remember(dn, record, entry)
        logger.info("ldapodm.session.update dn=%s changes=%d", dn, len(modifications))

    def save(self, record: "Model") -> str:
        """
        :py:meth:`bind` a new record or :py:meth:`update` an existing one.

        Returns:
            The record's DN.

        """
        self._check_open()
        _, dn = self._require_dn(record)
        try:
            self._load_entry(dn, type(record))
        except NotFound:
            return self.bind(record)
        self.update(record)
        return dn

    def unbind(self, target: "Model | str", model: type["Model"] | None = None) -> None:
        """
        Delete an entry.

        Args:
            target: A record, or a DN.
            model: For a DN, the model whose LDAP server holds the entry.

        Raises:
            NotFound: The entry does not exist.

        """
        self._check_open()
        if isinstance(target, str):
            dn = target
        else:
            _, dn = self._require_dn(target)
            model = type(target)
        try:
            self._directory(model).delete(dn)
        finally:
            self._forget(dn)
        logger.info("ldapodm.session.unbind dn=%s", dn)

    # Reads

    def lookup(self, dn: str, model: type["Model"] | None = None) -> "Model":
        """
        Return the record for ``dn``.

        Within a session a DN is read from the directory at most once, and
        always yields the same record object.  The record's class is the most
        specific registered model for the entry's object classes.

        Args:
            dn: The distinguished name.
            model: The expected model, if known.

        Raises:
            NotFound: ``dn`` does not exist.
            MappingError: No registered model matches the entry and no
                ``model`` was given.
            ConversionError: The entry is not a ``model``.

        """
        self._check_open()
        record = self._known_record(dn, model)
        if record is not None:
            logger.debug("ldapodm.session.lookup.identity-map dn=%s", dn)
            return record
        return self._materialize(self._load_entry(dn, model), model)

    def _filter_text(self, model: type["Model"], filter: Filter | FilterBuilder | None) -> str:  # noqa: A002
        if isinstance(filter, FilterBuilder):
            return filter.encode()
        builder = self.filter_builder(model)
        if filter is not None:
            builder.filter(filter)
        return builder.encode()

    def _base(self, model: type["Model"], base: str | None) -> str:
        return base or self.registry.get(model).basedn  # type: ignore[return-value]

    def search(
        self,
        model: type["Model"],
        filter: Filter | FilterBuilder | None = None,  # noqa: A002
        base: str | None = None,
        scope: int = ldap.SCOPE_SUBTREE,
        size_limit: int = 0,
    ) -> list["Model"]:
        """
        Search for records of ``model``.

        Args:
            model: The model to search for; subclass entries are returned as
                instances of the subclass.
            filter: Extra conditions, ANDed with the model's object classes.
            base: The search base.  Defaults to the model's ``basedn``.
            scope: An ``ldap.SCOPE_*`` constant.
            size_limit: Maximum number of results; 0 for the server's limit.

        Raises:
            SizeLimitExceeded: The server's size limit was hit.

        """
        self._check_open()
        entries = self._directory(model).search(
            self._base(model, base),
            self._filter_text(model, filter),
            scope=scope,
            sizelimit=size_limit,
        )
        records = []
        for entry in entries:
            self.cache.store(entry.dn, entry)
            records.append(self._materialize(entry, model))
        return records

    def count(
        self,
        model: type["Model"],
        filter: Filter | FilterBuilder | None = None,  # noqa: A002
        base: str | None = None,
    ) -> int:
        """
        Count the entries that :py:meth:`search` would return, without
        reading any attributes.
        """
        self._check_open()
        entries = self._directory(model).search(
            self._base(model, base),
            self._filter_text(model, filter),
            attributes=RETURN_NO_ATTRIBUTES,
        )
        return len(entries)

    def pages(
        self,
        model: type["Model"],
        page_size: int | None = None,
        filter: Filter | FilterBuilder | None = None,  # noqa: A002
        base: str | None = None,
    ) -> PagedSearch:
        """
        Search for records of ``model`` one page at a time.

        Args:
            model: The model to search for.
            page_size: Records per page.  Defaults to the server's
                ``page_size`` setting.
            filter: Extra conditions, ANDed with the model's object classes.
            base: The search base.  Defaults to the model's ``basedn``.

        Returns:
            A lazy, non-restartable sequence of pages.

        """
        self._check_open()
        directory = self._directory(model)
        size = page_size or directory.page_size
        basedn = self._base(model, base)
        text = self._filter_text(model, filter)

        def fetch(cookie: bytes) -> tuple[list[Any], bytes]:
            self._check_open()
            entries, next_cookie = directory.search_page(
                basedn, text, page_size=size, cookie=cookie
            )
            records = []
            for entry in entries:
                self.cache.store(entry.dn, entry)
                records.append(self._materialize(entry, model))
            return records, next_cookie

        return PagedSearch(fetch)
