"""
LDAP ODM type definitions.

Type aliases for the raw data structures exchanged with python-ldap.
"""

RawValues = list[bytes]
RawAttributes = dict[str, RawValues]
LDAPData = tuple[str, RawAttributes]
AddModlist = list[tuple[str, RawValues]]
ModifyModlistEntry = tuple[int, str, RawValues | None]
ModifyModlist = list[ModifyModlistEntry]
