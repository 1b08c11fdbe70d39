"""
LDAP ODM exception taxonomy.

None of these are retried internally: retry policy for transient network
failures belongs to python-ldap and the caller.
"""

from django.core.exceptions import ImproperlyConfigured, ObjectDoesNotExist


class LdapOdmError(Exception):
    """Base class for all errors raised by the mapping engine."""


class MappingError(LdapOdmError, ImproperlyConfigured):
    """
    A type or property is not mapped.

    This is configuration-time misuse: the type was never registered with the
    :py:class:`~ldapodm.metadata.MetadataRegistry`, the property does not
    exist on the model, or an attribute syntax has no converter.
    """


class ConversionError(LdapOdmError, ValueError):
    """
    A value cannot be encoded to or decoded from its declared syntax or type.
    """


class NotFound(LdapOdmError, ObjectDoesNotExist):
    """The requested distinguished name does not exist in the directory."""


class SizeLimitExceeded(LdapOdmError):
    """
    The server truncated a search because it hit a size limit.

    This is distinct from a paged search running out of pages; callers can
    catch it and re-page with a smaller page size.
    """
