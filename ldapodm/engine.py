"""
LDAP ODM mapping engine.

:py:class:`MappingEngine` translates between model instances and
:py:class:`~ldapodm.directory.DirectoryEntry` objects:

* record to entry: :py:meth:`MappingEngine.to_entry` merges a record into a
  new or previously persisted entry, after which
  :py:meth:`~ldapodm.directory.DirectoryEntry.modifications` yields the minimal
  modlist;
* entry to record: :py:meth:`MappingEngine.instantiate` picks the concrete
  model from the entry's object classes and creates a blank instance, then
  :py:meth:`MappingEngine.populate` decodes the attributes into it.

The engine holds no per-session state; sessions pass in a resolver for
reference attributes.
"""

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .directory import DirectoryEntry, normalize_dn
from .exceptions import ConversionError, MappingError
from .metadata import OBJECTCLASS_ATTRIBUTE, AttributeMetadata, ClassMetadata

if TYPE_CHECKING:
    from .metadata import MetadataRegistry
    from .models import Model

logger = logging.getLogger("django-ldapodm")

#: Turns a DN and the expected model into a record.
ReferenceResolver = Callable[[str, type["Model"]], "Model"]


class MappingEngine:
    """
    Args:
        registry: The frozen metadata registry.

    """

    def __init__(self, registry: "MetadataRegistry") -> None:
        self.registry = registry

    def __repr__(self) -> str:
        return f"<MappingEngine: {len(self.registry)} models>"

    # Values

    def reference_dn(self, attribute: AttributeMetadata, value: Any) -> str:
        """
        Return the DN of a referenced record.

        Raises:
            ConversionError: ``value`` is not an instance of the referenced
                model, or has no DN yet.
            MappingError: The referenced model is not registered.

        """
        self.registry.get(attribute.object_type)
        if not isinstance(value, attribute.object_type):
            msg = (
                f"{attribute.property_name} expects a "
                f"{attribute.object_type.__name__}, got {type(value).__name__}"
            )
            raise ConversionError(msg)
        dn = value._meta.get_identifier(value)
        if dn is None:
            msg = f"{attribute.property_name}: {value!r} has no distinguished name"
            raise ConversionError(msg)
        return dn

    def encode_value(self, attribute: AttributeMetadata, value: Any) -> bytes:
        if attribute.is_reference:
            return attribute.converter.to_directory(self.reference_dn(attribute, value))
        return attribute.converter.to_directory(value)

    def _key_from_value(self, attribute: AttributeMetadata, value: Any) -> Any:
        if attribute.is_reference:
            return normalize_dn(self.reference_dn(attribute, value))
        return value

    def _key_from_raw(self, attribute: AttributeMetadata, raw: bytes) -> Any:
        value = attribute.converter.from_directory(raw)
        if attribute.is_reference:
            return normalize_dn(value)
        return value

    # Record -> entry

    def merge_object_classes(self, metadata: ClassMetadata, entry: DirectoryEntry) -> None:
        """
        Add the model's object classes that ``entry`` lacks.  Object classes
        are never removed.
        """
        existing = {c.lower() for c in entry.object_classes}
        for object_class in metadata.object_classes:
            if object_class.lower() not in existing:
                entry.add_value(OBJECTCLASS_ATTRIBUTE, object_class.encode("utf-8"))

    def merge_value(
        self, entry: DirectoryEntry, attribute: AttributeMetadata, current: Any
    ) -> None:
        """
        Merge a single-valued property into ``entry``.

        Decoded values are compared; when they differ the persisted raw value
        is removed and the encoded current value added.  ``None`` means absent.
        """
        name = attribute.attribute_name
        persisted_raw = entry.get_first(name)
        if current is None:
            if persisted_raw is not None:
                entry.remove_value(name, persisted_raw)
            return
        if persisted_raw is None:
            entry.add_value(name, self.encode_value(attribute, current))
            return
        if self._key_from_raw(attribute, persisted_raw) == self._key_from_value(
            attribute, current
        ):
            return
        entry.remove_value(name, persisted_raw)
        entry.add_value(name, self.encode_value(attribute, current))

    def merge_values(
        self, entry: DirectoryEntry, attribute: AttributeMetadata, current: Any
    ) -> None:
        """
        Merge a multivalued property into ``entry``.

        The entry ends up holding exactly the elements of ``current``: stored
        values that are no longer wanted are removed and missing ones added.
        ``None`` or an empty collection clears the attribute.

        Raises:
            ConversionError: ``current`` is not a list, tuple or set.

        """
        name = attribute.attribute_name
        if current is None:
            entry.set_values(name, None)
            return
        if not isinstance(current, (list, tuple, set, frozenset)):
            msg = (
                f"{attribute.property_name} expects a list of values, "
                f"got {type(current).__name__}"
            )
            raise ConversionError(msg)
        if not current:
            entry.set_values(name, None)
            return
        wanted = [(self._key_from_value(attribute, v), v) for v in current]
        wanted_keys = [key for key, _ in wanted]
        kept = []
        for raw in entry.get(name):
            key = self._key_from_raw(attribute, raw)
            if key in wanted_keys and key not in kept:
                kept.append(key)
            else:
                entry.remove_value(name, raw)
        for key, value in wanted:
            if key not in kept:
                entry.add_value(name, self.encode_value(attribute, value))
                kept.append(key)

    def to_entry(self, record: "Model", entry: DirectoryEntry | None = None) -> DirectoryEntry:
        """
        Merge ``record`` into ``entry``, or into a fresh entry for a record
        that is not in the directory yet.

        Args:
            record: The model instance.
            entry: The persisted state of the record's entry, if any.

        Raises:
            MappingError: The record's model is not registered.
            ConversionError: A property value cannot be encoded, or the record
                has no primary key value.

        Returns:
            The entry, ready for ``add_modlist()`` or ``modifications()``.

        """
        metadata = self.registry.get(type(record))
        if entry is None:
            dn = metadata.get_identifier(record)
            if dn is None:
                msg = f"{record!r} has no value for its primary key '{metadata.identifier}'"
                raise ConversionError(msg)
            entry = DirectoryEntry(dn)
        self.merge_object_classes(metadata, entry)
        for attribute in metadata.attributes.values():
            if not attribute.editable:
                continue
            current = getattr(record, attribute.property_name, None)
            if attribute.multivalued:
                self.merge_values(entry, attribute, current)
            else:
                self.merge_value(entry, attribute, current)
        return entry

    # Entry -> record

    def resolve_metadata(
        self, entry: DirectoryEntry, model: type["Model"] | None = None
    ) -> ClassMetadata:
        """
        Pick the model for ``entry``: the most specific registered model for
        its object classes.  When ``model`` is given and no registered model
        matches, ``model`` itself is used.

        Raises:
            MappingError: No registered model matches the object classes and
                no ``model`` was given.
            ConversionError: The entry resolves to a model that is not a
                ``model``.

        """
        if model is not None:
            requested = self.registry.get(model)
            try:
                metadata = self.registry.resolve(entry.object_classes, preferred=model)
            except MappingError:
                return requested
            if not issubclass(metadata.model, model):  # type: ignore[arg-type]
                msg = (
                    f"{entry.dn} is a {metadata.object_name}, not a "
                    f"{requested.object_name}"
                )
                raise ConversionError(msg)
            return metadata
        return self.registry.resolve(entry.object_classes)

    def instantiate(
        self, entry: DirectoryEntry, model: type["Model"] | None = None
    ) -> "Model":
        """
        Create a blank instance of the concrete model for ``entry`` carrying
        only its DN.
        """
        metadata = self.resolve_metadata(entry, model)
        return metadata.model._new_blank(entry.dn)  # type: ignore[union-attr]

    def populate(
        self, record: "Model", entry: DirectoryEntry, resolver: ReferenceResolver
    ) -> "Model":
        """
        Decode the attributes of ``entry`` into ``record``.

        Args:
            record: A blank instance from :py:meth:`instantiate`.
            entry: The entry.
            resolver: Called with ``(dn, model)`` for each reference value.

        Raises:
            ConversionError: A raw value is malformed for its syntax.

        Returns:
            ``record``.

        """
        metadata = self.registry.get(type(record))
        for attribute in metadata.attributes.values():
            raws = entry.get(attribute.attribute_name)
            values: list[Any] = [attribute.converter.from_directory(r) for r in raws]
            if attribute.is_reference:
                values = [resolver(dn, attribute.object_type) for dn in values]
            if attribute.multivalued:
                setattr(record, attribute.property_name, values)
            else:
                setattr(record, attribute.property_name, values[0] if values else None)
        logger.debug("ldapodm.engine.populate dn=%s model=%s", entry.dn, metadata.object_name)
        return record

    def from_entry(
        self,
        entry: DirectoryEntry,
        resolver: ReferenceResolver,
        model: type["Model"] | None = None,
    ) -> "Model":
        return self.populate(self.instantiate(entry, model), entry, resolver)
