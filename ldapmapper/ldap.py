# The managers import python-ldap through this module so the tests can patch
# ``ldapmapper.ldap.initialize`` with a fake directory.
import ldap
from ldap import *  # noqa: F403
from ldap import dn, filter, modlist  # noqa: F401

__version__ = ldap.__version__
