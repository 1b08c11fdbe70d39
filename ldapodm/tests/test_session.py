# mypy: disable-error-code="attr-defined"
# type: ignore
"""
Tests for SessionFactory and Session using python-ldap-faker.
"""

import unittest
from unittest.mock import patch

from ldap_faker.unittest import LDAPFakerMixin

from ldapodm.directory import LdapDirectory
from ldapodm.exceptions import ConversionError, MappingError, NotFound
from ldapodm.fields import CharField
from ldapodm.filters import or_
from ldapodm.metadata import MetadataRegistry
from ldapodm.models import Model
from ldapodm.session import Session, SessionFactory

from .models import (
    ALEX_DN,
    BOB_DN,
    CAROL_DN,
    DIRECTORY_OBJECTS,
    STAFF_DN,
    Employee,
    Group,
    Person,
    make_registry,
)


class TestSessionFactory(unittest.TestCase):

    def test_freezes_registry(self):
        factory = SessionFactory([Person, Employee, Group])
        self.assertTrue(factory.registry.frozen)
        self.assertIn(Employee, factory.registry)

    def test_accepts_registry(self):
        registry = make_registry()
        self.assertIs(SessionFactory(registry).registry, registry)

    def test_unresolvable_references(self):
        with self.assertRaises(MappingError):
            SessionFactory([Group])

    def test_directory_per_server(self):
        factory = SessionFactory([Person, Employee, Group])
        directory = factory.directory_for(Person._meta)
        self.assertIsInstance(directory, LdapDirectory)
        self.assertEqual(directory.server, "test_server")
        self.assertIs(factory.directory_for(Group._meta), directory)

    def test_open_session(self):
        factory = SessionFactory([Person, Employee, Group])
        session = factory.open_session()
        self.assertIsInstance(session, Session)
        self.assertIs(session.registry, factory.registry)
        self.assertIsNot(session.cache, factory.open_session().cache)


class TestSessionWithFaker(LDAPFakerMixin, unittest.TestCase):

    ldap_modules = ["ldapodm"]

    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.factory = SessionFactory(
            [Person, Employee, Group], server="test_server"
        )

    def setUp(self):
        super().setUp()
        # Clear the fake LDAP directory before each test
        self.server_factory.default.raw_objects.clear()
        self.server_factory.default.objects.clear()
        for dn, attrs in DIRECTORY_OBJECTS:
            self.server_factory.default.register_object((dn, attrs))
        self.directory = self.factory.directory_for(Person._meta)
        self.session = self.factory.open_session()

    def tearDown(self):
        self.session.close()
        super().tearDown()

    # lookup

    def test_lookup(self):
        alex = self.session.lookup(ALEX_DN)
        self.assertIsInstance(alex, Person)
        self.assertNotIsInstance(alex, Employee)
        self.assertEqual(alex.surname, "Mathieu")
        self.assertEqual(alex.uidNumber, 1001)
        self.assertEqual(alex.dn, ALEX_DN)

    def test_lookup_resolves_subtype(self):
        bob = self.session.lookup(BOB_DN, model=Person)
        self.assertIsInstance(bob, Employee)
        self.assertEqual(bob.employeeNumber, 7)

    def test_lookup_unrelated_model(self):
        bob = self.session.lookup(BOB_DN)
        with self.assertRaises(ConversionError):
            self.session.lookup(BOB_DN, model=Group)
        self.assertIs(self.session.lookup(BOB_DN), bob)
        self.assertIs(self.session.lookup(BOB_DN, model=Person), bob)

    def test_lookup_missing(self):
        with self.assertRaises(NotFound):
            self.session.lookup("uid=nobody,ou=people,dc=example,dc=com")

    def test_lookup_twice_reads_once(self):
        with patch.object(self.directory, "lookup", wraps=self.directory.lookup) as lookup:
            first = self.session.lookup(ALEX_DN)
            second = self.session.lookup(ALEX_DN.upper())
        self.assertIs(first, second)
        self.assertEqual(lookup.call_count, 1)

    def test_sessions_do_not_share_records(self):
        other = self.factory.open_session()
        self.assertIsNot(self.session.lookup(ALEX_DN), other.lookup(ALEX_DN))
        other.close()

    def test_references(self):
        staff = self.session.lookup(STAFF_DN)
        self.assertIsInstance(staff, Group)
        self.assertEqual([m.uid for m in staff.members], ["alex", "bob"])
        self.assertIsInstance(staff.members[1], Employee)
        self.assertIs(staff.owner, staff.members[0])
        self.assertIs(staff.owner, self.session.lookup(ALEX_DN))

    def test_reference_cycle(self):
        bob = self.session.lookup(BOB_DN)
        carol = bob.manager
        self.assertEqual(carol.dn, CAROL_DN)
        self.assertIs(carol.manager, bob)

    def test_dangling_reference(self):
        self.server_factory.default.register_object(
            (
                "cn=orphans,ou=groups,dc=example,dc=com",
                {
                    "cn": [b"orphans"],
                    "member": [b"uid=nobody,ou=people,dc=example,dc=com"],
                    "objectClass": [b"top", b"groupOfNames"],
                },
            )
        )
        with self.assertLogs("django-ldapodm", level="WARNING"):
            groups = self.session.search(Group)
        self.assertEqual(sorted(g.cn for g in groups), ["orphans", "staff"])
        orphans = self.session.lookup("cn=orphans,ou=groups,dc=example,dc=com")
        self.assertEqual(len(orphans.members), 1)
        nobody = orphans.members[0]
        self.assertIsInstance(nobody, Person)
        self.assertEqual(nobody.dn, "uid=nobody,ou=people,dc=example,dc=com")
        self.assertIsNone(nobody.surname)

    def test_dangling_reference_survives_update(self):
        self.server_factory.default.register_object(
            (
                "cn=orphans,ou=groups,dc=example,dc=com",
                {
                    "cn": [b"orphans"],
                    "member": [b"uid=nobody,ou=people,dc=example,dc=com"],
                    "objectClass": [b"top", b"groupOfNames"],
                },
            )
        )
        orphans = self.session.lookup("cn=orphans,ou=groups,dc=example,dc=com")
        orphans.description = "Left behind"
        self.session.update(orphans)
        with self.factory.open_session() as other:
            stored = other.lookup("cn=orphans,ou=groups,dc=example,dc=com")
            self.assertEqual(
                [m.dn for m in stored.members], ["uid=nobody,ou=people,dc=example,dc=com"]
            )
            self.assertEqual(stored.description, "Left behind")

    # search / count

    def test_search(self):
        people = self.session.search(Person)
        self.assertEqual(sorted(p.uid for p in people), ["alex", "bob", "carol"])
        employees = [p for p in people if isinstance(p, Employee)]
        self.assertEqual(sorted(e.uid for e in employees), ["bob", "carol"])

    def test_search_subtype(self):
        employees = self.session.search(Employee)
        self.assertEqual(sorted(e.uid for e in employees), ["bob", "carol"])

    def test_search_filter(self):
        builder = self.session.filter_builder(Person)
        people = self.session.search(
            Person,
            or_(
                builder.property("surname").equals_to("Mathieu"),
                builder.property("uid").equals_to("carol"),
            ),
        )
        self.assertEqual(sorted(p.uid for p in people), ["alex", "carol"])

    def test_search_filter_builder(self):
        builder = self.session.filter_builder(Person)
        builder.filter(builder.property("uidNumber").equals_to(1002))
        self.assertEqual([p.uid for p in self.session.search(Person, builder)], ["bob"])

    def test_search_reference(self):
        alex = self.session.lookup(ALEX_DN)
        builder = self.session.filter_builder(Group)
        groups = self.session.search(Group, builder.property("owner").equals_to(alex))
        self.assertEqual([g.cn for g in groups], ["staff"])

    def test_search_shares_identity_map(self):
        alex = self.session.lookup(ALEX_DN)
        people = self.session.search(Person)
        self.assertIn(alex, people)
        self.assertTrue(any(p is alex for p in people))

    def test_search_unregistered(self):
        class Device(Model):
            cn = CharField(primary_key=True)

            class Meta:
                basedn = "ou=devices,dc=example,dc=com"
                objectclass = "device"

        with self.assertRaises(MappingError):
            self.session.search(Device)

    def test_count(self):
        self.assertEqual(self.session.count(Person), 3)
        self.assertEqual(self.session.count(Employee), 2)
        builder = self.session.filter_builder(Person)
        self.assertEqual(
            self.session.count(Person, builder.property("surname").equals_to("Smith")), 1
        )

    # bind / update / save / unbind

    def test_bind(self):
        dave = Person(uid="dave", commonName="Dave Doe", surname="Doe", mail=["d@example.com"])
        dn = self.session.bind(dave)
        self.assertEqual(dn, "uid=dave,ou=people,dc=example,dc=com")
        self.assertIs(self.session.lookup(dn), dave)

        with self.factory.open_session() as other:
            stored = other.lookup(dn)
            self.assertIsNot(stored, dave)
            self.assertEqual(stored.surname, "Doe")
            self.assertEqual(stored.mail, ["d@example.com"])
            self.assertEqual(stored.objectclass, ["top", "person"])

    def test_bind_without_primary_key(self):
        with self.assertRaises(ConversionError):
            self.session.bind(Person(surname="Doe"))

    def test_bind_references(self):
        alex = self.session.lookup(ALEX_DN)
        self.session.bind(Group(cn="admins", members=[alex], owner=alex))
        with self.factory.open_session() as other:
            admins = other.lookup("cn=admins,ou=groups,dc=example,dc=com")
            self.assertEqual([m.dn for m in admins.members], [ALEX_DN])

    def test_update(self):
        alex = self.session.lookup(ALEX_DN)
        alex.surname = "Matthews"
        alex.mail = ["amathieu@example.com", "alex@example.org"]
        self.session.update(alex)

        with self.factory.open_session() as other:
            stored = other.lookup(ALEX_DN)
            self.assertEqual(stored.surname, "Matthews")
            self.assertCountEqual(stored.mail, ["amathieu@example.com", "alex@example.org"])
            self.assertEqual(stored.commonName, "Alex Mathieu")

    def test_update_clears_attributes(self):
        alex = self.session.lookup(ALEX_DN)
        alex.mail = []
        alex.uidNumber = None
        self.session.update(alex)
        with self.factory.open_session() as other:
            stored = other.lookup(ALEX_DN)
            self.assertEqual(stored.mail, [])
            self.assertIsNone(stored.uidNumber)

    def test_update_without_changes(self):
        alex = self.session.lookup(ALEX_DN)
        with patch.object(self.directory, "modify") as modify:
            self.session.update(alex)
        modify.assert_not_called()

    def test_update_sends_minimal_changes(self):
        alex = self.session.lookup(ALEX_DN)
        alex.commonName = "Alexandre Mathieu"
        with patch.object(self.directory, "modify", wraps=self.directory.modify) as modify:
            self.session.update(alex)
        modlist = modify.call_args.args[1]
        self.assertEqual([m[1] for m in modlist], ["cn", "cn"])

    def test_update_unread_record(self):
        alex = Person(uid="alex", commonName="Alex Mathieu", surname="Mathieu")
        self.session.update(alex)
        with self.factory.open_session() as other:
            stored = other.lookup(ALEX_DN)
            self.assertIsNone(stored.uidNumber)
            self.assertEqual(stored.mail, [])

    def test_update_missing(self):
        with self.assertRaises(NotFound):
            self.session.update(Person(uid="nobody", surname="Nobody"))

    def test_update_reference(self):
        staff = self.session.lookup(STAFF_DN)
        staff.owner = self.session.lookup(BOB_DN)
        staff.members = staff.members[:1]
        self.session.update(staff)
        with self.factory.open_session() as other:
            stored = other.lookup(STAFF_DN)
            self.assertEqual(stored.owner.dn, BOB_DN)
            self.assertEqual([m.dn for m in stored.members], [ALEX_DN])

    def test_save(self):
        dave = Person(uid="dave", surname="Doe")
        self.session.save(dave)
        dave.surname = "Dee"
        self.session.save(dave)
        with self.factory.open_session() as other:
            self.assertEqual(other.lookup(dave.dn).surname, "Dee")

    def test_unbind(self):
        alex = self.session.lookup(ALEX_DN)
        self.session.unbind(alex)
        self.assertNotIn(ALEX_DN, self.session.cache)
        with self.assertRaises(NotFound):
            self.session.lookup(ALEX_DN)

    def test_unbind_dn(self):
        self.session.unbind(CAROL_DN, model=Person)
        self.assertEqual(self.session.count(Person), 2)

    def test_unbind_missing(self):
        with self.assertRaises(NotFound):
            self.session.unbind("uid=nobody,ou=people,dc=example,dc=com", model=Person)

    # lifecycle

    def test_close(self):
        self.session.lookup(ALEX_DN)
        self.assertEqual(len(self.session.cache), 1)
        self.session.close()
        self.assertEqual(len(self.session.cache), 0)
        with self.assertRaises(RuntimeError):
            self.session.lookup(ALEX_DN)

    def test_context_manager(self):
        with self.factory.open_session() as session:
            session.lookup(ALEX_DN)
        self.assertTrue(session.closed)
        self.assertEqual(len(session.cache), 0)

    def test_registry_is_shared(self):
        self.assertIsInstance(self.session.registry, MetadataRegistry)
        self.assertIs(self.session.registry, self.factory.open_session().registry)


if __name__ == "__main__":
    unittest.main()
