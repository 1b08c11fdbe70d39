"""
LDAP ODM field declarations.

Fields are the declaration API for mapped properties: they are placed on a
:py:class:`~ldapodm.models.Model` subclass as class attributes and, when the
class is created, each one contributes an immutable
:py:class:`~ldapodm.metadata.AttributeMetadata` to the model's
:py:class:`~ldapodm.metadata.ClassMetadata`.  After that the field object is
no longer consulted by the engine.
"""

from collections.abc import Callable
from functools import total_ordering
from typing import TYPE_CHECKING, Any, cast

from django.db.models.fields import NOT_PROVIDED
from django.utils.functional import cached_property

from . import converters
from .converters import get_converter
from .metadata import AttributeMetadata

if TYPE_CHECKING:
    from .models import Model


@total_ordering
class Field:
    """
    Base field class for LDAP ODM models.

    Args:
        db_column: The attribute name in the LDAP schema.  Defaults to the
            name of the property.
        name: The name of the property.  Set automatically from the class
            attribute name.
        primary_key: If True, this field is the RDN attribute of the entry's
            distinguished name.
        default: The default value for the field on new instances.
        editable: If False, the engine never writes this attribute.
        syntax: Override the LDAP syntax (and so the converter) of the field.

    """

    #: The LDAP syntax OID of the attribute; selects the converter.
    syntax: str = converters.DIRECTORY_STRING
    #: Whether the attribute holds several values.
    multivalued: bool = False
    #: Counter for field creation order, used for sorting fields.
    creation_counter: int = 0

    def __init__(
        self,
        db_column: str | None = None,
        name: str | None = None,
        primary_key: bool = False,
        default: Any = NOT_PROVIDED,
        editable: bool = True,
        syntax: str | None = None,
    ) -> None:
        self.name = name
        self.db_column = db_column
        self.primary_key = primary_key
        self.default = default
        self.editable = editable
        if syntax is not None:
            self.syntax = syntax
        self.model: type[Model] | None = None

        self.creation_counter = Field.creation_counter
        Field.creation_counter += 1

    def __repr__(self) -> str:
        path = f"{self.__class__.__module__}.{self.__class__.__qualname__}"
        name = getattr(self, "name", None)
        if name is not None:
            return f"<{path}: {name}>"
        return f"<{path}>"

    def __lt__(self, other: "Field") -> bool:
        if isinstance(other, Field):
            return self.creation_counter < other.creation_counter
        return NotImplemented

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Field):
            return self.creation_counter == other.creation_counter
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.creation_counter)

    @property
    def ldap_attribute(self) -> str:
        """
        Get the LDAP attribute name for this field.

        Returns:
            The LDAP attribute name (db_column if set, otherwise field name).

        """
        return cast("str", self.db_column or self.name)

    @property
    def object_type(self) -> type:
        """
        The Python type of one value of this field.
        """
        return get_converter(self.syntax).python_type

    @property
    def is_reference(self) -> bool:
        return False

    def has_default(self) -> bool:
        return self.default is not NOT_PROVIDED

    def get_default(self) -> Any:
        return self._get_default()

    @cached_property
    def _get_default(self) -> Callable[[], Any]:
        if self.has_default():
            if callable(self.default):
                return self.default
            return lambda: self.default
        if self.multivalued:
            return list
        return lambda: None

    def get_attribute_metadata(self) -> AttributeMetadata:
        """
        Build the immutable metadata record for this field.

        Returns:
            The :py:class:`~ldapodm.metadata.AttributeMetadata` for the field.

        """
        return AttributeMetadata(
            attribute_name=self.ldap_attribute,
            property_name=cast("str", self.name),
            multivalued=self.multivalued,
            object_type=self.object_type,
            converter=get_converter(self.syntax),
            is_reference=self.is_reference,
            editable=self.editable,
            primary_key=self.primary_key,
            default=self.get_default,
        )

    def contribute_to_class(self, cls, name: str) -> None:
        """
        Register the field with the model class it belongs to.

        Args:
            cls: The model class to register with.
            name: The name of the class attribute holding the field.

        """
        if self.name is None:
            self.name = name
        self.model = cls
        cls._meta.add_field(self.get_attribute_metadata())


class CharField(Field):
    """A single-valued directory string."""


class IntegerField(Field):
    """A single-valued RFC 4517 INTEGER."""

    syntax = converters.INTEGER


class BooleanField(Field):
    """A single-valued RFC 4517 Boolean, stored as ``TRUE`` or ``FALSE``."""

    syntax = converters.BOOLEAN


class DateTimeField(Field):
    """A Generalized Time value, decoded to a UTC-aware ``datetime``."""

    syntax = converters.GENERALIZED_TIME


class BinaryField(Field):
    """
    Binary data such as photos or certificates, kept as ``bytes``.
    """

    syntax = converters.OCTET_STRING


class BinaryStringField(Field):
    """Text stored in a binary attribute."""

    syntax = converters.BINARY_STRING


class DnField(Field):
    """A distinguished name kept as a plain string, not resolved."""

    syntax = converters.DN


class CharListField(CharField):
    """
    A multivalued directory string, kept as a ``list`` of ``str``.
    """

    multivalued = True


class IntegerListField(IntegerField):
    """A multivalued INTEGER, kept as a ``list`` of ``int``."""

    multivalued = True


class ReferenceField(Field):
    """
    A DN-valued attribute that points at another mapped entry.

    The attribute holds the distinguished name of the referenced entry; on
    the Python side the property holds the referenced model instance.

    Args:
        to: The referenced model class, or ``"self"`` for the model being
            declared.

    Keyword Args:
        **kwargs: Keyword arguments passed to :py:class:`Field`.

    """

    syntax = converters.DN

    def __init__(self, to: "type[Model] | str", **kwargs) -> None:
        super().__init__(**kwargs)
        self.to = to

    @property
    def object_type(self) -> type:
        if isinstance(self.to, str):
            msg = (
                f'ReferenceField "{self.name}": only "self" is supported as a '
                f"string reference, got {self.to!r}"
            )
            raise TypeError(msg)
        return self.to

    @property
    def is_reference(self) -> bool:
        return True

    def contribute_to_class(self, cls, name: str) -> None:
        if self.to == "self":
            self.to = cls
        super().contribute_to_class(cls, name)


class ReferenceListField(ReferenceField):
    """
    A multivalued reference, such as the members of a group.
    """

    multivalued = True
