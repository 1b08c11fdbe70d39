"""
LDAP ODM model base classes and metaclass.

This module provides the base :py:class:`Model` class and the
:py:class:`LdapModelBase` metaclass.  Declaring a model evaluates its fields
and ``Meta`` class once, at class creation, into an immutable
:py:class:`~ldapodm.metadata.ClassMetadata` available as ``model._meta``.
"""

import inspect
from typing import Any, cast

from .metadata import ClassMetadata


class LdapModelBase(type):
    """
    Metaclass for LDAP ODM models.

    This metaclass collects the fields and ``Meta`` options of a model class
    into its :py:class:`~ldapodm.metadata.ClassMetadata`.  Subclassing a
    mapped model inherits the parent's fields and extends its object class
    hierarchy.
    """

    def __new__(cls, name, bases, attrs, **kwargs):
        super_new = super().__new__
        parents = [b for b in bases if isinstance(b, LdapModelBase)]
        if not parents:
            return super_new(cls, name, bases, attrs)

        # Create the class.
        module = attrs.pop("__module__")
        new_attrs = {"__module__": module}
        classcell = attrs.pop("__classcell__", None)
        if classcell is not None:
            new_attrs["__classcell__"] = classcell
        new_class = super_new(cls, name, bases, new_attrs, **kwargs)
        attr_meta = attrs.pop("Meta", None)
        meta = attr_meta or getattr(new_class, "Meta", None)

        parent_meta = None
        for parent in parents:
            if isinstance(getattr(parent, "_meta", None), ClassMetadata):
                parent_meta = parent._meta
                break

        new_class.add_to_class("_meta", ClassMetadata(meta, parent=parent_meta))

        # Add all attributes to the class.  This is where the fields get
        # turned into attribute metadata
        for obj_name, obj in attrs.items():
            new_class.add_to_class(obj_name, obj)

        new_class._meta._prepare(new_class, parent_meta)  # type: ignore[attr-defined]
        if new_class.__doc__ is None:
            new_class.__doc__ = "{}({})".format(
                name, ", ".join(new_class._meta.properties)  # type: ignore[attr-defined]
            )
        return new_class

    def add_to_class(cls, name: str, value: Any) -> None:
        """
        Add an attribute to the class, calling contribute_to_class if available.

        Args:
            name: The name of the attribute to add.
            value: The value to assign to the attribute.

        """
        # We should call the contribute_to_class method only if it's bound
        if not inspect.isclass(value) and hasattr(value, "contribute_to_class"):
            value.contribute_to_class(cls, name)
        else:
            setattr(cls, name, value)


class Model(metaclass=LdapModelBase):
    """
    Base class for LDAP ODM models.

    Instances are plain Python objects: one attribute per mapped property plus
    the distinguished name in :py:attr:`dn`.  All directory I/O goes through a
    :py:class:`~ldapodm.session.Session`.

    Example:
        .. code-block:: python

            class Person(Model):
                uid = CharField(primary_key=True)
                commonName = CharField(db_column="cn")
                surname = CharField(db_column="sn")

                class Meta:
                    basedn = "ou=people,dc=example,dc=com"
                    objectclass = "person"

    """

    #: The model's metadata.
    _meta: ClassMetadata | None = None

    def __init__(self, *args, **kwargs) -> None:
        """
        Initialize a new model instance.

        Args:
            *args: Positional arguments for property values, in declaration
                order.
            **kwargs: Keyword arguments for property values, plus ``_dn``.

        Raises:
            IndexError: If the number of positional arguments exceeds the number
                of properties.
            TypeError: If an invalid keyword argument is provided.

        """
        opts = cast("ClassMetadata", self._meta)
        self._dn: str | None = kwargs.pop("_dn", None)
        attributes = list(opts.attributes.values())
        if len(args) > len(attributes):
            msg = "Number of args exceeds number of fields"
            raise IndexError(msg)
        for val, attribute in zip(args, attributes, strict=False):
            setattr(self, attribute.property_name, val)
            kwargs.pop(attribute.property_name, None)
        for attribute in attributes[len(args) :]:
            if attribute.property_name in kwargs:
                val = kwargs.pop(attribute.property_name)
            else:
                val = attribute.default()
            setattr(self, attribute.property_name, val)
        if kwargs:
            kwarg = next(iter(kwargs))
            msg = f"'{kwarg}' is an invalid keyword argument for this function"
            raise TypeError(msg)

    @classmethod
    def _new_blank(cls, dn: str) -> "Model":
        """
        Create an instance carrying only its DN, without running
        :py:meth:`__init__` defaults.  The mapping engine fills in the
        properties afterwards.
        """
        instance = cls.__new__(cls)
        instance._dn = dn
        for name in cast("ClassMetadata", cls._meta).attributes:
            setattr(instance, name, None)
        return instance

    @property
    def dn(self) -> str | None:
        """
        The distinguished name of this instance.

        Returns:
            The DN string, or None while the primary key is unset.

        """
        return cast("ClassMetadata", self._meta).get_identifier(self)

    def _get_pk_val(self) -> Any:
        return getattr(self, cast("ClassMetadata", self._meta).identifier)

    def _set_pk_val(self, value: Any) -> None:
        setattr(self, cast("ClassMetadata", self._meta).identifier, value)

    #: The primary key property for this model instance.
    pk = property(_get_pk_val, _set_pk_val)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self}>"

    def __str__(self) -> str:
        return f"{self.__class__.__name__} object ({self.dn})"

    def __eq__(self, other: object) -> bool:
        """
        Two instances are equal when they are of the same model and have the
        same DN.  Instances without a DN are only equal to themselves.
        """
        if not isinstance(other, Model):
            return False
        if type(self) is not type(other):
            return False
        my_dn = self.dn
        if my_dn is None:
            return self is other
        other_dn = other.dn
        return other_dn is not None and my_dn.lower() == other_dn.lower()

    def __hash__(self) -> int:
        dn = self.dn
        return hash(dn.lower() if dn else id(self))
