# The directory transport calls ``ldap.initialize`` through this module so that
# python-ldap-faker can patch ``ldapodm.ldap`` in the test suites.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
