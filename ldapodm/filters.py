"""
LDAP ODM search filters.

Filters are small immutable-by-convention trees that render to RFC 4515
filter strings with :py:meth:`Filter.encode`.  Build them with the module
level constructors (:py:func:`equals`, :py:func:`and_`, ...) or the ``&``,
``|`` and ``~`` operators, or bind a :py:class:`FilterBuilder` to a model so
that property names and typed values are translated for you::

    builder = session.filter_builder(Person)
    builder.filter(
        builder.property("commonName").equals_to("alex")
        | builder.property("surname").equals_to("mathieu")
    )
    str(builder)
    # '(&(objectClass=top)(objectClass=person)(|(cn=alex)(sn=mathieu)))'
"""

import enum
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, cast

from ldap.filter import escape_filter_chars

from .exceptions import ConversionError, MappingError
from .metadata import OBJECTCLASS_ATTRIBUTE, AttributeMetadata, ClassMetadata

if TYPE_CHECKING:
    from .metadata import MetadataRegistry


class Comparison(enum.Enum):
    """
    The comparison operators of an attribute value assertion.
    """

    EQUAL = "="
    GREATER_OR_EQUAL = ">="
    LESS_OR_EQUAL = "<="
    APPROX = "~="


def hex_escape(value: bytes) -> str:
    """
    Escape every byte of ``value`` as ``\\xx``.
    """
    return "".join(f"\\{byte:02x}" for byte in value)


class Filter:
    """
    Base class for all filters.
    """

    def encode(self, metadata: ClassMetadata | None = None) -> str:
        """
        Render this filter as an RFC 4515 string.

        Args:
            metadata: The metadata of the model the filter is evaluated for.
                Only needed by filters that name properties instead of LDAP
                attributes.

        Returns:
            The filter string, always enclosed in parentheses.

        """
        raise NotImplementedError

    def __str__(self) -> str:
        return self.encode()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self}>"

    def __and__(self, other: "Filter") -> "AndFilter":
        return and_(self, other)

    def __or__(self, other: "Filter") -> "OrFilter":
        return or_(self, other)

    def __invert__(self) -> "NotFilter":
        return not_(self)


class CompareFilter(Filter):
    """
    ``(attribute<op>value)`` where ``value`` is text that gets escaped.
    """

    def __init__(self, attribute: str, operator: Comparison, value: str) -> None:
        if not isinstance(value, str):
            msg = f"filter value for {attribute} must be a str, got {value!r}"
            raise ConversionError(msg)
        self.attribute = attribute
        self.operator = operator
        self.value = value

    def encode(self, metadata: ClassMetadata | None = None) -> str:  # noqa: ARG002
        return f"({self.attribute}{self.operator.value}{escape_filter_chars(self.value)})"


class PresentFilter(Filter):
    """``(attribute=*)``"""

    def __init__(self, attribute: str) -> None:
        self.attribute = attribute

    def encode(self, metadata: ClassMetadata | None = None) -> str:  # noqa: ARG002
        return f"({self.attribute}=*)"


class SubstringFilter(Filter):
    """
    ``(attribute=initial*any*...*final)``.  At least one part must be given.
    """

    def __init__(
        self,
        attribute: str,
        initial: str | None = None,
        any: Sequence[str] = (),  # noqa: A002
        final: str | None = None,
    ) -> None:
        if not initial and not final and not any:
            msg = f"substring filter on {attribute} needs at least one part"
            raise ConversionError(msg)
        self.attribute = attribute
        self.initial = initial
        self.any = list(any)
        self.final = final

    def encode(self, metadata: ClassMetadata | None = None) -> str:  # noqa: ARG002
        parts = [escape_filter_chars(self.initial or "")]
        parts.extend(escape_filter_chars(part) for part in self.any)
        parts.append(escape_filter_chars(self.final or ""))
        return f"({self.attribute}={'*'.join(parts)})"


class RawCompareFilter(Filter):
    """
    A comparison whose value skips type conversion.

    ``str`` values only get the special filter characters escaped; ``bytes``
    values have every byte hex-escaped so that arbitrary binary data can be
    matched.
    """

    def __init__(
        self, attribute: str, operator: Comparison, raw_value: str | bytes
    ) -> None:
        self.attribute = attribute
        self.operator = operator
        self.raw_value = raw_value

    def escaped_value(self) -> str:
        if isinstance(self.raw_value, (bytes, bytearray)):
            return hex_escape(bytes(self.raw_value))
        return escape_filter_chars(self.raw_value)

    def encode(self, metadata: ClassMetadata | None = None) -> str:  # noqa: ARG002
        return f"({self.attribute}{self.operator.value}{self.escaped_value()})"


class PropertyRawCompareFilter(RawCompareFilter):
    """
    A raw comparison that names a model property; the LDAP attribute is
    looked up in the metadata passed to :py:meth:`encode`.
    """

    def __init__(
        self, property_name: str, operator: Comparison, raw_value: str | bytes
    ) -> None:
        super().__init__(property_name, operator, raw_value)
        self.property_name = property_name

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__}: "
            f"{self.property_name}{self.operator.value}{self.escaped_value()}>"
        )

    def encode(self, metadata: ClassMetadata | None = None) -> str:
        if metadata is None:
            msg = f"property '{self.property_name}' can only be encoded for a model"
            raise MappingError(msg)
        attribute = metadata.get_attribute_metadata(self.property_name).attribute_name
        return f"({attribute}{self.operator.value}{self.escaped_value()})"


class _CompositeFilter(Filter):
    #: The filter operator character.
    operator: str = ""

    def __init__(self, *filters: Filter) -> None:
        self.children: list[Filter] = []
        for f in filters:
            self.add(f)

    def add(self, f: Filter) -> None:
        """
        Append a child.  A child of the same kind contributes its own children
        instead, so nested ANDs (or ORs) collapse into one level.
        """
        if not isinstance(f, Filter):
            msg = f"{f!r} is not a Filter"
            raise TypeError(msg)
        if type(f) is type(self):
            self.children.extend(cast("_CompositeFilter", f).children)
        else:
            self.children.append(f)

    def __len__(self) -> int:
        return len(self.children)

    def encode(self, metadata: ClassMetadata | None = None) -> str:
        return "({}{})".format(
            self.operator, "".join(child.encode(metadata) for child in self.children)
        )


class AndFilter(_CompositeFilter):
    """``(&...)``"""

    operator = "&"


class OrFilter(_CompositeFilter):
    """``(|...)``"""

    operator = "|"


class NotFilter(Filter):
    """``(!...)``"""

    def __init__(self, child: Filter) -> None:
        self.child = child

    def encode(self, metadata: ClassMetadata | None = None) -> str:
        return f"(!{self.child.encode(metadata)})"


# Constructors


def equals(attribute: str, value: str) -> CompareFilter:
    return CompareFilter(attribute, Comparison.EQUAL, value)


def greater_or_equal(attribute: str, value: str) -> CompareFilter:
    return CompareFilter(attribute, Comparison.GREATER_OR_EQUAL, value)


def less_or_equal(attribute: str, value: str) -> CompareFilter:
    return CompareFilter(attribute, Comparison.LESS_OR_EQUAL, value)


def approx(attribute: str, value: str) -> CompareFilter:
    return CompareFilter(attribute, Comparison.APPROX, value)


def present(attribute: str) -> PresentFilter:
    return PresentFilter(attribute)


def substring(
    attribute: str,
    initial: str | None = None,
    any: Sequence[str] = (),  # noqa: A002
    final: str | None = None,
) -> SubstringFilter:
    return SubstringFilter(attribute, initial=initial, any=any, final=final)


def raw(attribute: str, operator: Comparison | str, raw_value: str | bytes) -> RawCompareFilter:
    return RawCompareFilter(attribute, Comparison(operator), raw_value)


def and_(*filters: Filter) -> AndFilter:
    return AndFilter(*filters)


def or_(*filters: Filter) -> OrFilter:
    return OrFilter(*filters)


def not_(f: Filter) -> NotFilter:
    return NotFilter(f)


# Model bound builders


class FilterBuilder:
    """
    A filter bound to one model.

    The builder starts as an AND of one ``(objectClass=...)`` guard per
    object class in the model's hierarchy; :py:meth:`filter` ANDs more
    filters into it.

    Args:
        metadata: The model's metadata.
        registry: The registry used to resolve reference properties.

    """

    def __init__(self, metadata: ClassMetadata, registry: "MetadataRegistry") -> None:
        self.metadata = metadata
        self.registry = registry
        self.root = AndFilter(
            *[equals(OBJECTCLASS_ATTRIBUTE, c) for c in metadata.object_classes]
        )

    def __repr__(self) -> str:
        return f"<FilterBuilder for {self.metadata.object_name}: {self}>"

    def __str__(self) -> str:
        return self.encode()

    def filter(self, *filters: Filter) -> "FilterBuilder":
        """
        AND ``filters`` into the root.  Returns the builder, so calls chain.
        """
        for f in filters:
            self.root.add(f)
        return self

    def property(self, name: str) -> "PropertyFilterBuilder":
        """
        Start a filter on a model property.

        Raises:
            MappingError: The model has no such property.

        """
        return PropertyFilterBuilder(self, self.metadata.get_attribute_metadata(name))

    def encode(self) -> str:
        return self.root.encode(self.metadata)


class PropertyFilterBuilder:
    """
    Builds filters on one property, converting Python values with the
    property's converter.

    Reference properties take an instance of the referenced model and compare
    against its DN.  Other properties take an instance of the property's type.
    """

    def __init__(self, builder: FilterBuilder, attribute: AttributeMetadata) -> None:
        self.builder = builder
        self.attribute = attribute

    @property
    def attribute_name(self) -> str:
        return self.attribute.attribute_name

    def encode_value(self, value: Any) -> str | bytes | None:
        """
        Convert ``value`` for use in a filter.

        Raises:
            ConversionError: ``value`` is not an instance of the property's
                type, or a referenced record has no DN yet.
            MappingError: The referenced model is not registered.

        Returns:
            Text, or ``bytes`` for binary properties, or ``None`` for ``None``.

        """
        if value is None:
            return None
        attribute = self.attribute
        if attribute.is_reference:
            self.builder.registry.get(attribute.object_type)
            if not isinstance(value, attribute.object_type):
                msg = (
                    f"{attribute.property_name} expects a "
                    f"{attribute.object_type.__name__}, got {type(value).__name__}"
                )
                raise ConversionError(msg)
            dn = value._meta.get_identifier(value)
            if dn is None:
                msg = f"{value!r} has no distinguished name"
                raise ConversionError(msg)
            return attribute.converter.to_directory(dn).decode("utf-8")
        encoded = attribute.converter.to_directory(value)
        if attribute.object_type is bytes:
            return encoded
        return encoded.decode("utf-8")

    def _compare(self, operator: Comparison, value: Any) -> Filter:
        encoded = self.encode_value(value)
        if encoded is None:
            if operator is Comparison.EQUAL:
                return not_(present(self.attribute_name))
            msg = f"None cannot be compared with {operator.value} on {self.attribute_name}"
            raise ConversionError(msg)
        if isinstance(encoded, bytes):
            return RawCompareFilter(self.attribute_name, operator, encoded)
        return CompareFilter(self.attribute_name, operator, encoded)

    def equals_to(self, value: Any) -> Filter:
        """
        ``(attr=value)``; ``None`` matches entries without the attribute.
        """
        return self._compare(Comparison.EQUAL, value)

    def greater_or_equal(self, value: Any) -> Filter:
        return self._compare(Comparison.GREATER_OR_EQUAL, value)

    def less_or_equal(self, value: Any) -> Filter:
        return self._compare(Comparison.LESS_OR_EQUAL, value)

    def approx(self, value: Any) -> Filter:
        return self._compare(Comparison.APPROX, value)

    def present(self) -> PresentFilter:
        return present(self.attribute_name)

    def _check_text(self, value: Any) -> str:
        if self.attribute.object_type is not str or self.attribute.is_reference:
            msg = (
                "substring matching is only supported on text properties, not "
                f"{self.attribute.property_name}"
            )
            raise ConversionError(msg)
        if not isinstance(value, str):
            msg = f"{self.attribute.property_name} expects str, got {type(value).__name__}"
            raise ConversionError(msg)
        return value

    def starts_with(self, value: str) -> SubstringFilter:
        return substring(self.attribute_name, initial=self._check_text(value))

    def contains(self, value: str) -> SubstringFilter:
        return substring(self.attribute_name, any=[self._check_text(value)])

    def ends_with(self, value: str) -> SubstringFilter:
        return substring(self.attribute_name, final=self._check_text(value))

    def raw(self, operator: Comparison | str, raw_value: str | bytes) -> PropertyRawCompareFilter:
        """
        A comparison that bypasses conversion.  The attribute name is resolved
        when the filter is encoded.
        """
        return PropertyRawCompareFilter(
            self.attribute.property_name, Comparison(operator), raw_value
        )
