"""
Type aliases for the data exchanged with python-ldap.

The attribute buffer is the single exchange format between the mapping
strategies and the directory client.
"""

from typing import Any

#: Attribute name to list of raw values, as python-ldap returns and expects.
AttributeBuffer = dict[str, list[bytes]]
#: A search result entry: (dn, attributes).
LDAPData = tuple[str, AttributeBuffer]

ModifyModListEntry = tuple[int, str, Any]
ModifyModList = list[ModifyModListEntry]
AddModlist = list[tuple[str, list[bytes]]]
