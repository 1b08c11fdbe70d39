"""
LDAP ODM syntax converters.

A converter maps one raw LDAP attribute value (always ``bytes`` on the wire
with python-ldap) to a typed Python value and back.  Converters are stateless;
one shared instance exists per LDAP syntax and is looked up with
:py:func:`get_converter`.
"""

import datetime
from typing import Any, ClassVar

import pytz
from ldap.dn import dn2str, str2dn

from ldapodm import ldap

from .exceptions import ConversionError, MappingError

#: Prefix shared by the RFC 4517 syntax OIDs.
SYNTAX_PREFIX = "1.3.6.1.4.1.1466.115.121.1."

BOOLEAN = SYNTAX_PREFIX + "7"
DN = SYNTAX_PREFIX + "12"
DIRECTORY_STRING = SYNTAX_PREFIX + "15"
GENERALIZED_TIME = SYNTAX_PREFIX + "24"
IA5_STRING = SYNTAX_PREFIX + "26"
INTEGER = SYNTAX_PREFIX + "27"
JPEG = SYNTAX_PREFIX + "28"
OCTET_STRING = SYNTAX_PREFIX + "40"
PRINTABLE_STRING = SYNTAX_PREFIX + "44"
#: Not an RFC 4517 syntax: binary attributes that hold UTF-8 text.
BINARY_STRING = "x-binary-string"


class Converter:
    """
    Base class for syntax converters.

    Subclasses implement :py:meth:`encode` and :py:meth:`decode`; the public
    :py:meth:`to_directory` and :py:meth:`from_directory` wrap them with type
    checking so that every failure surfaces as
    :py:class:`~ldapodm.exceptions.ConversionError`.
    """

    #: The Python type of decoded values.
    python_type: ClassVar[type] = str

    def to_directory(self, value: Any) -> bytes:
        """
        Convert a Python value to its raw LDAP representation.

        Args:
            value: the value to convert

        Raises:
            ConversionError: ``value`` is not of :py:attr:`python_type` or
                cannot be represented in this syntax.

        Returns:
            The raw value.

        """
        if not self.accepts(value):
            msg = (
                f"{self.__class__.__name__} expects {self.python_type.__name__}, "
                f"got {type(value).__name__}: {value!r}"
            )
            raise ConversionError(msg)
        return self.encode(value)

    def from_directory(self, raw: bytes) -> Any:
        """
        Convert a raw LDAP value to its Python representation.

        Args:
            raw: the raw value as returned by python-ldap

        Raises:
            ConversionError: ``raw`` is malformed for this syntax.

        Returns:
            The decoded value.

        """
        if not isinstance(raw, bytes):
            msg = f"{self.__class__.__name__} expects bytes, got {type(raw).__name__}"
            raise ConversionError(msg)
        return self.decode(raw)

    def accepts(self, value: Any) -> bool:
        """
        Return ``True`` if ``value`` belongs to this converter's domain.

        ``bool`` is a subclass of ``int`` in Python, but a boolean is never a
        valid value for a non-boolean syntax.
        """
        if isinstance(value, bool) and self.python_type is not bool:
            return False
        return isinstance(value, self.python_type)

    def encode(self, value: Any) -> bytes:
        raise NotImplementedError

    def decode(self, raw: bytes) -> Any:
        raise NotImplementedError

    def _text(self, raw: bytes) -> str:
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            msg = f"{self.__class__.__name__}: {raw!r} is not valid UTF-8"
            raise ConversionError(msg) from e

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class StringConverter(Converter):
    """Directory, IA5 and printable strings."""

    python_type = str

    def encode(self, value: str) -> bytes:
        return value.encode("utf-8")

    def decode(self, raw: bytes) -> str:
        return self._text(raw)


class BinaryStringConverter(StringConverter):
    """
    Text stored in a binary attribute.

    The wire value is the UTF-8 encoding of the text; this differs from
    :py:class:`StringConverter` only in which attributes it is registered for.
    """


class IntegerConverter(Converter):
    """RFC 4517 INTEGER syntax."""

    python_type = int

    def encode(self, value: int) -> bytes:
        return str(value).encode("ascii")

    def decode(self, raw: bytes) -> int:
        text = self._text(raw)
        try:
            return int(text)
        except ValueError as e:
            msg = f"'{text}' value must be an integer."
            raise ConversionError(msg) from e


class BooleanConverter(Converter):
    """
    RFC 4517 Boolean syntax.

    The canonical wire values are ``TRUE`` and ``FALSE``; decoding is
    case-insensitive because several servers store lowercase values.
    """

    python_type = bool

    #: The string value used to represent True in LDAP.
    LDAP_TRUE: str = "TRUE"
    #: The string value used to represent False in LDAP.
    LDAP_FALSE: str = "FALSE"

    def encode(self, value: bool) -> bytes:  # noqa: FBT001
        return (self.LDAP_TRUE if value else self.LDAP_FALSE).encode("ascii")

    def decode(self, raw: bytes) -> bool:
        text = self._text(raw).upper()
        if text == self.LDAP_TRUE:
            return True
        if text == self.LDAP_FALSE:
            return False
        msg = f"'{raw!r}' value must be either TRUE or FALSE."
        raise ConversionError(msg)


class GeneralizedTimeConverter(Converter):
    """
    RFC 4517 Generalized Time syntax.

    Decoded values are always timezone-aware UTC datetimes.  Naive datetimes
    are assumed to already be in UTC when encoding.
    """

    python_type = datetime.datetime

    #: Accepted input formats, tried in order.
    LDAP_DATETIME_FORMATS: ClassVar[list[str]] = [
        "%Y%m%d%H%M%SZ",
        "%Y%m%d%H%M%S.%fZ",
        "%Y%m%d%H%M%S%z",
        "%Y%m%d%H%M%S.%f%z",
    ]
    #: The output format.
    LDAP_DATETIME_FORMAT: str = "%Y%m%d%H%M%SZ"
    #: The output format for values with sub-second precision.
    LDAP_DATETIME_FRACTION_FORMAT: str = "%Y%m%d%H%M%S.%fZ"

    def encode(self, value: datetime.datetime) -> bytes:
        if value.tzinfo is None:
            value = pytz.utc.localize(value)
        fmt = self.LDAP_DATETIME_FORMAT
        if value.microsecond:
            fmt = self.LDAP_DATETIME_FRACTION_FORMAT
        return value.astimezone(pytz.utc).strftime(fmt).encode("ascii")

    def decode(self, raw: bytes) -> datetime.datetime:
        text = self._text(raw)
        for fmt in self.LDAP_DATETIME_FORMATS:
            try:
                dt = datetime.datetime.strptime(text, fmt)  # noqa: DTZ007
            except ValueError:  # noqa: PERF203
                continue
            if dt.tzinfo is None:
                return pytz.utc.localize(dt)
            return dt.astimezone(pytz.utc)
        msg = f"LDAP datetime '{text}' value is not in a supported format"
        raise ConversionError(msg)


class BinaryConverter(Converter):
    """Octet strings: the value is passed through untouched."""

    python_type = bytes

    def accepts(self, value: Any) -> bool:
        return isinstance(value, (bytes, bytearray))

    def encode(self, value: bytes | bytearray) -> bytes:
        return bytes(value)

    def decode(self, raw: bytes) -> bytes:
        return raw


class DnConverter(StringConverter):
    """
    RFC 4517 DN syntax.

    Values are validated and normalized (whitespace and escaping) with
    :py:mod:`ldap.dn`; the case of attribute types and values is preserved.
    """

    def normalize(self, value: str) -> str:
        try:
            return dn2str(str2dn(value))
        except ldap.DECODING_ERROR as e:
            msg = f"'{value}' is not a valid distinguished name"
            raise ConversionError(msg) from e

    def encode(self, value: str) -> bytes:
        return self.normalize(value).encode("utf-8")

    def decode(self, raw: bytes) -> str:
        return self.normalize(self._text(raw))


_string = StringConverter()
_binary = BinaryConverter()

#: Shared converter instances by syntax OID.
CONVERTERS: dict[str, Converter] = {
    DIRECTORY_STRING: _string,
    IA5_STRING: _string,
    PRINTABLE_STRING: _string,
    INTEGER: IntegerConverter(),
    BOOLEAN: BooleanConverter(),
    GENERALIZED_TIME: GeneralizedTimeConverter(),
    OCTET_STRING: _binary,
    JPEG: _binary,
    BINARY_STRING: BinaryStringConverter(),
    DN: DnConverter(),
}


def get_converter(syntax: str) -> Converter:
    """
    Return the shared converter for an LDAP syntax.

    Args:
        syntax: a syntax OID (or one of the names defined in this module)

    Raises:
        MappingError: no converter is registered for ``syntax``.

    Returns:
        The converter.

    """
    try:
        return CONVERTERS[syntax]
    except KeyError as e:
        msg = f"No converter registered for LDAP syntax {syntax}"
        raise MappingError(msg) from e
