# mypy: disable-error-code="attr-defined"
# type: ignore
"""
Tests for DirectoryEntry and the LdapDirectory transport.

The transport is exercised against python-ldap-faker; paging and size limit
behaviour, which the faker does not simulate, use mock connections.
"""

import unittest
from unittest.mock import MagicMock, patch

import ldap
from django.core.exceptions import ImproperlyConfigured
from ldap.controls import SimplePagedResultsControl
from ldap_faker.unittest import LDAPFakerMixin

from ldapodm.directory import DirectoryEntry, LdapDirectory, normalize_dn
from ldapodm.exceptions import ConversionError, NotFound, SizeLimitExceeded

from .models import ALEX_DN, BOB_DN, DIRECTORY_OBJECTS, TEST_LDAP_SERVERS

PEOPLE = "ou=people,dc=example,dc=com"


class TestNormalizeDn(unittest.TestCase):

    def test_normalize(self):
        self.assertEqual(
            normalize_dn("UID=Alex, ou=People,DC=example,dc=com"),
            "uid=alex,ou=people,dc=example,dc=com",
        )

    def test_invalid(self):
        with self.assertRaises(ConversionError):
            normalize_dn("not a dn")


class TestDirectoryEntry(unittest.TestCase):

    def setUp(self):
        self.entry = DirectoryEntry(
            ALEX_DN,
            {
                "uid": [b"alex"],
                "sn": [b"Mathieu"],
                "mail": [b"a@example.com", b"b@example.com"],
                "objectClass": [b"top", b"person"],
            },
        )

    def test_attributes_are_case_insensitive(self):
        self.assertEqual(self.entry.get("SN"), [b"Mathieu"])
        self.assertIn("MAIL", self.entry)
        self.assertEqual(self.entry.get_first("uid"), b"alex")
        self.assertEqual(self.entry.get("cn"), [])
        self.assertIsNone(self.entry.get_first("cn"))
        self.assertEqual(self.entry.object_classes, ["top", "person"])

    def test_get_returns_a_copy(self):
        self.entry.get("mail").append(b"c@example.com")
        self.assertEqual(len(self.entry.get("mail")), 2)

    def test_no_modifications_initially(self):
        self.assertEqual(self.entry.modifications(), [])

    def test_add_value(self):
        self.entry.add_value("mail", b"c@example.com")
        self.entry.add_value("mail", b"c@example.com")
        self.assertEqual(
            self.entry.modifications(), [(ldap.MOD_ADD, "mail", [b"c@example.com"])]
        )

    def test_remove_value(self):
        self.entry.remove_value("mail", b"a@example.com")
        self.entry.remove_value("mail", b"z@example.com")
        self.entry.remove_value("cn", b"nothing")
        self.assertEqual(
            self.entry.modifications(), [(ldap.MOD_DELETE, "mail", [b"a@example.com"])]
        )

    def test_removing_the_last_value_deletes_the_attribute(self):
        self.entry.remove_value("sn", b"Mathieu")
        self.assertNotIn("sn", self.entry)
        self.assertEqual(self.entry.modifications(), [(ldap.MOD_DELETE, "sn", None)])

    def test_set_values_is_minimal(self):
        self.entry.set_values("mail", [b"b@example.com", b"c@example.com"])
        self.assertEqual(
            self.entry.modifications(),
            [
                (ldap.MOD_DELETE, "mail", [b"a@example.com"]),
                (ldap.MOD_ADD, "mail", [b"c@example.com"]),
            ],
        )

    def test_set_values_none_clears(self):
        self.entry.set_values("mail", None)
        self.assertEqual(self.entry.modifications(), [(ldap.MOD_DELETE, "mail", None)])

    def test_new_attribute(self):
        self.entry.set_values("cn", [b"Alex Mathieu"])
        self.assertEqual(
            self.entry.modifications(), [(ldap.MOD_ADD, "cn", [b"Alex Mathieu"])]
        )

    def test_reordering_is_not_a_change(self):
        self.entry.set_values("mail", [b"b@example.com", b"a@example.com"])
        self.assertEqual(self.entry.modifications(), [])

    def test_commit(self):
        self.entry.set_values("sn", [b"Smith"])
        self.entry.commit()
        self.assertEqual(self.entry.modifications(), [])
        self.assertEqual(self.entry.get("sn"), [b"Smith"])

    def test_add_modlist(self):
        modlist = dict(self.entry.add_modlist())
        self.assertEqual(modlist["sn"], [b"Mathieu"])
        self.assertEqual(modlist["objectClass"], [b"top", b"person"])

    def test_from_ldap(self):
        entry = DirectoryEntry.from_ldap((BOB_DN, {"uid": [b"bob"]}))
        self.assertEqual(entry.dn, BOB_DN)
        self.assertEqual(entry.attribute_names, ["uid"])


class TestLdapDirectoryConfiguration(unittest.TestCase):

    def test_configuration(self):
        directory = LdapDirectory("test_server")
        self.assertEqual(directory.basedn, "dc=example,dc=com")
        self.assertEqual(directory.page_size, 2)
        self.assertEqual(directory.config, TEST_LDAP_SERVERS["test_server"])

    def test_unknown_server(self):
        with self.assertRaises(ImproperlyConfigured):
            LdapDirectory("no_such_server")

    def test_missing_settings(self):
        with patch("django.conf.settings.LDAP_SERVERS", {}):
            with self.assertRaises(ImproperlyConfigured):
                LdapDirectory("test_server")

    def test_invalid_tls_verify(self):
        directory = LdapDirectory("test_server")
        config = {"read": dict(TEST_LDAP_SERVERS["test_server"]["read"], tls_verify="sometimes")}
        with patch.object(directory, "config", config), patch("ldapodm.ldap.initialize"):
            with self.assertRaises(ValueError):
                directory.connect("read")

    def test_connect_goes_through_patchable_module(self):
        directory = LdapDirectory("test_server")
        with patch("ldapodm.ldap.initialize") as initialize:
            connection = directory._connect("read")
        initialize.assert_called_once_with("ldap://localhost:389")
        self.assertIs(connection, initialize.return_value)
        connection.set_option.assert_any_call(ldap.OPT_REFERRALS, 0)
        connection.set_option.assert_any_call(ldap.OPT_NETWORK_TIMEOUT, 15.0)
        connection.set_option.assert_any_call(ldap.OPT_SIZELIMIT, 1000)
        connection.set_option.assert_any_call(
            ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER
        )
        connection.start_tls_s.assert_not_called()
        connection.simple_bind_s.assert_called_once_with("cn=admin,dc=example,dc=com", "admin")

    def test_missing_key(self):
        directory = LdapDirectory("test_server")
        with patch.object(directory, "config", {}):
            with self.assertRaises(ImproperlyConfigured):
                directory.connect("write")


class TestLdapDirectoryWithFaker(LDAPFakerMixin, unittest.TestCase):

    ldap_modules = ["ldapodm"]

    def setUp(self):
        super().setUp()
        self.directory = LdapDirectory("test_server")

        # Clear the fake LDAP directory before each test
        self.server_factory.default.raw_objects.clear()
        self.server_factory.default.objects.clear()
        for dn, attrs in DIRECTORY_OBJECTS:
            self.server_factory.default.register_object((dn, attrs))

    def test_connection_management(self):
        self.assertFalse(self.directory.has_connection())
        self.directory.connect("read")
        self.assertTrue(self.directory.has_connection())
        self.assertIsNotNone(self.directory.connection)
        self.directory.disconnect()
        self.assertFalse(self.directory.has_connection())

    def test_lookup(self):
        entry = self.directory.lookup(ALEX_DN)
        self.assertIsInstance(entry, DirectoryEntry)
        self.assertEqual(entry.get("sn"), [b"Mathieu"])
        self.assertEqual(entry.modifications(), [])
        self.assertFalse(self.directory.has_connection())

    def test_lookup_missing(self):
        with self.assertRaises(NotFound):
            self.directory.lookup("uid=nobody,ou=people,dc=example,dc=com")

    def test_search(self):
        entries = self.directory.search(PEOPLE, "(objectClass=person)")
        self.assertEqual(
            sorted(e.dn for e in entries),
            sorted([ALEX_DN, BOB_DN, "uid=carol,ou=people,dc=example,dc=com"]),
        )

    def test_search_no_match(self):
        self.assertEqual(self.directory.search(PEOPLE, "(uid=nobody)"), [])

    def test_add(self):
        dn = "uid=dave,ou=people,dc=example,dc=com"
        entry = DirectoryEntry(
            dn, {"uid": [b"dave"], "sn": [b"Doe"], "objectClass": [b"top", b"person"]}
        )
        self.directory.add(entry)
        self.assertEqual(self.directory.lookup(dn).get("sn"), [b"Doe"])

    def test_modify(self):
        entry = self.directory.lookup(ALEX_DN)
        entry.set_values("mail", [b"amathieu@example.com", b"alex@example.org"])
        entry.set_values("sn", [b"Matthews"])
        self.directory.modify(ALEX_DN, entry.modifications())
        updated = self.directory.lookup(ALEX_DN)
        self.assertEqual(updated.get("sn"), [b"Matthews"])
        self.assertCountEqual(
            updated.get("mail"), [b"amathieu@example.com", b"alex@example.org"]
        )

    def test_delete(self):
        self.directory.delete(ALEX_DN)
        with self.assertRaises(NotFound):
            self.directory.lookup(ALEX_DN)

    def test_delete_missing(self):
        with self.assertRaises(NotFound):
            self.directory.delete("uid=nobody,ou=people,dc=example,dc=com")

    def test_connection_is_reused_inside_a_connection(self):
        self.directory.connect("read")
        connection = self.directory.connection
        self.directory.lookup(ALEX_DN)
        self.assertIs(self.directory.connection, connection)
        self.directory.disconnect()


class TestLdapDirectoryPaging(unittest.TestCase):

    def setUp(self):
        self.directory = LdapDirectory("test_server")
        self.connection = MagicMock()
        self.directory.set_connection(self.connection)

    def tearDown(self):
        self.directory.remove_connection()

    def _control(self, cookie):
        control = MagicMock()
        control.controlType = SimplePagedResultsControl.controlType
        control.cookie = cookie
        return control

    def test_get_pctrls(self):
        self.assertEqual(self.directory._get_pctrls([]), [])
        self.assertEqual(self.directory._get_pctrls(None), [])
        other = MagicMock()
        other.controlType = "1.2.3"
        control = self._control(b"abc")
        self.assertEqual(self.directory._get_pctrls([other, control]), [control])

    def test_search_page(self):
        self.connection.search_ext.return_value = 1
        self.connection.result3.return_value = (
            ldap.RES_SEARCH_RESULT,
            [(ALEX_DN, {"uid": [b"alex"]}), (None, ["ldap://referral"])],
            1,
            [self._control(b"next")],
        )
        entries, cookie = self.directory.search_page(
            PEOPLE, "(objectClass=person)", page_size=1, cookie=b"prev"
        )
        self.assertEqual([e.dn for e in entries], [ALEX_DN])
        self.assertEqual(cookie, b"next")
        paging = self.connection.search_ext.call_args.kwargs["serverctrls"][0]
        self.assertEqual(paging.size, 1)
        self.assertEqual(paging.cookie, b"prev")

    def test_search_page_last_page(self):
        self.connection.result3.return_value = (ldap.RES_SEARCH_RESULT, [], 1, [])
        entries, cookie = self.directory.search_page(PEOPLE, "(objectClass=person)")
        self.assertEqual(entries, [])
        self.assertEqual(cookie, b"")

    def test_search_page_size_limit(self):
        self.connection.search_ext.side_effect = ldap.SIZELIMIT_EXCEEDED(
            {"desc": "Size limit exceeded"}
        )
        with self.assertRaises(SizeLimitExceeded):
            self.directory.search_page(PEOPLE, "(objectClass=person)")

    def test_search_size_limit(self):
        self.connection.result3.side_effect = ldap.SIZELIMIT_EXCEEDED(
            {"desc": "Size limit exceeded"}
        )
        with self.assertRaises(SizeLimitExceeded):
            self.directory.search(PEOPLE, "(objectClass=person)", sizelimit=1)

    def test_search_with_size_limit(self):
        self.connection.result3.return_value = (
            ldap.RES_SEARCH_RESULT,
            [(ALEX_DN, {"uid": [b"alex"]})],
            1,
            [],
        )
        entries = self.directory.search(PEOPLE, "(objectClass=person)", sizelimit=1)
        self.assertEqual(len(entries), 1)
        self.assertEqual(self.connection.search_ext.call_args.kwargs["sizelimit"], 1)


if __name__ == "__main__":
    unittest.main()
