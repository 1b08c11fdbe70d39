"""
LDAP ODM model metadata.

This module provides :py:class:`AttributeMetadata` (one mapped property),
:py:class:`ClassMetadata` (one mapped model, available as ``model._meta``) and
:py:class:`MetadataRegistry`, the read-only process-wide map from model classes
to their metadata that resolves entries' object classes back to models.
"""

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, cast

from django.core.exceptions import ImproperlyConfigured
from django.utils.functional import cached_property
from ldap.dn import escape_dn_chars

from . import converters
from .converters import Converter, get_converter
from .exceptions import MappingError

if TYPE_CHECKING:
    from .models import Model

logger = logging.getLogger("django-ldapodm")

#: The attribute holding an entry's object classes.
OBJECTCLASS_ATTRIBUTE = "objectClass"
#: The implicit root of every object class hierarchy.
ROOT_OBJECTCLASS = "top"

#: The ``Meta`` attributes understood by :py:class:`ClassMetadata`.
DEFAULT_NAMES = (
    "ldap_server",
    "basedn",
    "objectclass",
    "extra_objectclasses",
)


@dataclass(frozen=True)
class AttributeMetadata:
    """
    Immutable description of one mapped property.
    """

    #: The LDAP attribute name.
    attribute_name: str
    #: The Python property name on the model.
    property_name: str
    #: ``True`` if the attribute holds several values (a ``list`` in Python).
    multivalued: bool
    #: The Python type of one value.  For references, the referenced model.
    object_type: type
    #: The converter for one raw value.
    converter: Converter
    #: ``True`` if values are distinguished names of other mapped entries.
    is_reference: bool = False
    #: ``False`` if the engine must never write this attribute.
    editable: bool = True
    #: ``True`` for the RDN attribute of the entry.
    primary_key: bool = False
    #: Returns the default value for new instances.
    default: Callable[[], Any] = field(default=lambda: None, compare=False)


def _unique(names: Iterable[str]) -> tuple[str, ...]:
    """
    Remove case-insensitive duplicates from ``names``, keeping the first
    occurrence.
    """
    seen: set[str] = set()
    result = []
    for name in names:
        if name.lower() not in seen:
            seen.add(name.lower())
            result.append(name)
    return tuple(result)


class ClassMetadata:
    """
    Metadata for one mapped model.

    This gets instantiated by parsing the ``Meta`` class for the model, and is
    available as ``model._meta`` on the model class.  A subclass of a mapped
    model inherits its parent's attributes and any ``Meta`` options it does
    not set itself, and its object class hierarchy extends its parent's.

    Once :py:meth:`_prepare` has run the instance is immutable.

    Args:
        meta: The Meta class from the model definition.
        parent: The metadata of the mapped parent model, if any.

    """

    def __init__(self, meta, parent: "ClassMetadata | None" = None) -> None:
        #: The key into ``settings.LDAP_SERVERS`` that this model uses.
        self.ldap_server: str = "default"
        #: The base DN for this model.  Falls back to the server's ``basedn``.
        self.basedn: str | None = None
        #: The structural objectclass for this model.
        self.objectclass: str | None = None
        #: Additional objectclasses for this model, e.g. auxiliary classes.
        self.extra_objectclasses: list[str] = []
        #: The full object class hierarchy, root first.
        self.object_classes: tuple[str, ...] = ()

        self.model: type[Model] | None = None
        self.object_name: str | None = None
        #: The :py:class:`AttributeMetadata` of the RDN attribute.
        self.pk: AttributeMetadata | None = None
        #: Attribute metadata by property name, in declaration order.
        self.attributes: dict[str, AttributeMetadata] = {}

        self.meta = meta
        self.parent = parent
        if parent is not None:
            for attr_name in DEFAULT_NAMES:
                setattr(self, attr_name, getattr(parent, attr_name))
            for attribute in parent.attributes.values():
                if attribute.attribute_name != OBJECTCLASS_ATTRIBUTE:
                    self.add_field(attribute)
        self._prepared = False

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_prepared", False):
            msg = f"{self!r} is immutable; cannot set {name}"
            raise AttributeError(msg)
        super().__setattr__(name, value)

    def __repr__(self) -> str:
        return f"<ClassMetadata for {self.object_name}>"

    def contribute_to_class(self, cls: type["Model"], name: str) -> None:  # noqa: ARG002
        """
        Used by the :py:class:`~ldapodm.models.LdapModelBase` metaclass to
        add this :py:class:`ClassMetadata` instance to a model class.

        Args:
            cls: The model class to contribute to.
            name: The name of the attribute.

        Raises:
            TypeError: ``class Meta`` has attributes we don't understand.

        """
        cls._meta = self
        self.model = cls
        self.object_name = cls.__name__

        if self.meta:
            meta_attrs = {
                k: v for k, v in self.meta.__dict__.items() if not k.startswith("_")
            }
            for attr_name in DEFAULT_NAMES:
                if attr_name in meta_attrs:
                    setattr(self, attr_name, meta_attrs.pop(attr_name))
            # Any leftover attributes must be invalid.
            if meta_attrs:
                msg = "'class Meta' got invalid attribute(s): {}".format(
                    ",".join(meta_attrs)
                )
                raise TypeError(msg)
        del self.meta

    def add_field(self, attribute: AttributeMetadata) -> None:
        """
        Add the metadata of one property.

        Args:
            attribute: The attribute metadata to add.

        Raises:
            ImproperlyConfigured: The property or attribute name is already
                mapped on this model.

        """
        lookup = {a.attribute_name.lower(): a for a in self.attributes.values()}
        if attribute.property_name in self.attributes:
            msg = (
                f"{self.object_name}: property '{attribute.property_name}' is "
                "mapped twice"
            )
            raise ImproperlyConfigured(msg)
        if attribute.attribute_name.lower() in lookup:
            msg = (
                f"{self.object_name}: LDAP attribute '{attribute.attribute_name}' "
                "is mapped twice"
            )
            raise ImproperlyConfigured(msg)
        self.attributes[attribute.property_name] = attribute
        if attribute.primary_key and self.pk is None:
            self.pk = attribute

    def _prepare(self, model: type["Model"], parent: "ClassMetadata | None") -> None:
        """
        Finish setting up the metadata after all fields have been added, then
        freeze it.

        Args:
            model: The model class to prepare.
            parent: The metadata of the mapped parent model, if any.

        Raises:
            ImproperlyConfigured: If the model doesn't have a primary key, has
                no base DN, or manually defines an objectclass field.

        """
        if self.pk is None:
            msg = f"'{self.object_name}' model doesn't have a primary key"
            raise ImproperlyConfigured(msg)
        if self.pk.multivalued or self.pk.is_reference:
            msg = f"'{self.object_name}' model: the primary key must be single-valued"
            raise ImproperlyConfigured(msg)
        for attribute in self.attributes.values():
            if attribute.attribute_name.lower() == OBJECTCLASS_ATTRIBUTE.lower():
                msg = (
                    "The objectclass field is defined automatically; don't "
                    f"manually define it on the '{self.object_name}' model"
                )
                raise ImproperlyConfigured(msg)
        if not self.basedn:
            self.basedn = self._server_basedn()
            logger.warning(
                "ldapodm.metadata.basedn.fallback model=%s basedn=%s",
                self.object_name,
                self.basedn,
            )

        hierarchy = [ROOT_OBJECTCLASS]
        if parent is not None:
            hierarchy.extend(parent.object_classes)
        hierarchy.extend(self.extra_objectclasses)
        if self.objectclass:
            hierarchy.append(self.objectclass)
        self.object_classes = _unique(hierarchy)

        self.add_field(
            AttributeMetadata(
                attribute_name=OBJECTCLASS_ATTRIBUTE,
                property_name="objectclass",
                multivalued=True,
                object_type=str,
                converter=get_converter(converters.DIRECTORY_STRING),
                editable=False,
                default=list,
            )
        )
        self.model = model
        self._prepared = True

    def _server_basedn(self) -> str:
        from django.conf import settings

        try:
            config = settings.LDAP_SERVERS[self.ldap_server]
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = (
                f"{self.object_name}: settings.LDAP_SERVERS has no key "
                f"'{self.ldap_server}'"
            )
            raise ImproperlyConfigured(msg) from e
        try:
            return config["basedn"]
        except KeyError as e:
            msg = (
                f"{self.object_name}: no Meta.basedn and settings.LDAP_SERVERS"
                f"['{self.ldap_server}'] has no 'basedn' key"
            )
            raise ImproperlyConfigured(msg) from e

    @property
    def properties(self) -> list[str]:
        """The mapped property names, in declaration order."""
        return list(self.attributes)

    @cached_property
    def attribute_names(self) -> list[str]:
        """The LDAP attribute names of all mapped properties."""
        return [a.attribute_name for a in self.attributes.values()]

    @cached_property
    def attributes_by_name(self) -> dict[str, AttributeMetadata]:
        """Attribute metadata keyed by lowercased LDAP attribute name."""
        return {a.attribute_name.lower(): a for a in self.attributes.values()}

    @property
    def identifier(self) -> str:
        """The property name of the RDN attribute."""
        return cast("AttributeMetadata", self.pk).property_name

    def get_attribute_metadata(self, property_name: str) -> AttributeMetadata:
        """
        Return the metadata for a property.

        Args:
            property_name: The name of the property on the model.

        Raises:
            MappingError: No such property is mapped.

        Returns:
            The attribute metadata.

        """
        try:
            return self.attributes[property_name]
        except KeyError as e:
            msg = f"property {property_name} not found in {self.object_name}"
            raise MappingError(msg) from e

    def get_attribute_metadata_by_attribute(self, attribute: str) -> AttributeMetadata:
        """
        Return the metadata for an LDAP attribute name (case-insensitive).

        Args:
            attribute: The LDAP attribute name.

        Raises:
            MappingError: No property maps this attribute.

        Returns:
            The attribute metadata.

        """
        try:
            return self.attributes_by_name[attribute.lower()]
        except KeyError as e:
            msg = f"attribute {attribute} not mapped in {self.object_name}"
            raise MappingError(msg) from e

    def get_identifier(self, obj: "Model") -> str | None:
        """
        Return the distinguished name of a record.

        A record that was read from the directory (or renamed) carries its DN;
        otherwise the DN is built from the primary key and :py:attr:`basedn`.

        Args:
            obj: The model instance.

        Returns:
            The DN, or ``None`` while the primary key is still unset.

        """
        if obj._dn:
            return obj._dn
        pk = cast("AttributeMetadata", self.pk)
        value = getattr(obj, pk.property_name)
        if value is None or value == "":
            return None
        rdn_value = pk.converter.to_directory(value).decode("utf-8")
        return f"{pk.attribute_name}={escape_dn_chars(rdn_value)},{self.basedn}"

    def set_identifier(self, obj: "Model", dn: str) -> None:
        obj._dn = dn


class MetadataRegistry:
    """
    The map from mapped model classes to their :py:class:`ClassMetadata`.

    A registry is populated once at startup and then frozen; afterwards it is
    read-only and safe to share between threads.  A type is persistent if and
    only if it is registered here.

    Args:
        models: The model classes to register.

    """

    def __init__(self, models: Iterable[type["Model"]] = ()) -> None:
        self._by_model: dict[type, ClassMetadata] = {}
        self._by_object_classes: dict[frozenset[str], list[ClassMetadata]] = {}
        self._frozen = False
        for model in models:
            self.register(model)

    def register(self, model: type["Model"]) -> ClassMetadata:
        """
        Register a model class.

        Args:
            model: The model class.

        Raises:
            RuntimeError: The registry is frozen.
            MappingError: ``model`` is not a model class.

        Returns:
            The model's metadata.

        """
        if self._frozen:
            msg = f"Cannot register {model!r}: the metadata registry is frozen"
            raise RuntimeError(msg)
        metadata = getattr(model, "_meta", None)
        if not isinstance(metadata, ClassMetadata) or metadata.model is not model:
            msg = f"{model!r} is not a persistent class"
            raise MappingError(msg)
        if model not in self._by_model:
            self._by_model[model] = metadata
            key = frozenset(c.lower() for c in metadata.object_classes)
            self._by_object_classes.setdefault(key, []).append(metadata)
        return metadata

    def freeze(self) -> "MetadataRegistry":
        """
        Make the registry read-only.

        Raises:
            MappingError: A reference attribute points at an unregistered model.

        Returns:
            The registry itself.

        """
        for metadata in self._by_model.values():
            for attribute in metadata.attributes.values():
                if attribute.is_reference and attribute.object_type not in self:
                    msg = (
                        f"{metadata.object_name}.{attribute.property_name} references "
                        f"{attribute.object_type!r}, which is not registered"
                    )
                    raise MappingError(msg)
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, model: object) -> bool:
        try:
            return model in self._by_model
        except TypeError:
            return False

    def __iter__(self) -> Iterator[ClassMetadata]:
        return iter(self._by_model.values())

    def __len__(self) -> int:
        return len(self._by_model)

    def is_persistent(self, model: object) -> bool:
        return model in self

    def get(self, model: object) -> ClassMetadata:
        """
        Return the metadata for a registered type.

        Raises:
            MappingError: ``model`` is not registered.

        """
        try:
            return self._by_model[model]  # type: ignore[index]
        except (KeyError, TypeError) as e:
            msg = f"{model!r} is not a persistent class"
            raise MappingError(msg) from e

    def resolve(
        self,
        object_classes: Iterable[str],
        preferred: type["Model"] | None = None,
    ) -> ClassMetadata:
        """
        Find the most specific registered model for an entry's object classes.

        The winner is the model whose object class set is the largest subset
        of ``object_classes``.  Among equally specific candidates, ``preferred``
        wins if it is one of them, otherwise the first registered.

        Args:
            object_classes: The entry's object classes.
            preferred: The model the caller asked for, if any.

        Raises:
            MappingError: No registered model matches.

        Returns:
            The metadata of the matching model.

        """
        entry_classes = frozenset(c.lower() for c in object_classes)
        best: list[ClassMetadata] = []
        best_size = -1
        for key, candidates in self._by_object_classes.items():
            if key <= entry_classes and len(key) > best_size:
                best, best_size = candidates, len(key)
        if not best:
            msg = f"class not found for object classes {sorted(entry_classes)}"
            raise MappingError(msg)
        for metadata in best:
            if metadata.model is preferred:
                return metadata
        return best[0]
