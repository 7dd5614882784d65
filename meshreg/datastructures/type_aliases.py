"""
Semantic type aliases for meshreg.

These aliases keep signatures self-documenting: a hostname, a cluster id and a
network id are all strings on the wire, but they are never interchangeable.
"""

from collections.abc import Mapping
from typing import Any, TypeAlias

# Time types
Timestamp: TypeAlias = float
DurationSeconds: TypeAlias = float

# Identity types
ClusterId: TypeAlias = str
NetworkId: TypeAlias = str
Hostname: TypeAlias = str
NamespaceName: TypeAlias = str
ResourceName: TypeAlias = str
NodeName: TypeAlias = str
ProxyId: TypeAlias = str
ObjectKey: TypeAlias = str  # "namespace/name"

# Addressing types
IPAddress: TypeAlias = str
PortNumber: TypeAlias = int
PortName: TypeAlias = str
ProtocolName: TypeAlias = str
CidrRange: TypeAlias = str

# Label types
LabelKey: TypeAlias = str
LabelValue: TypeAlias = str
LabelMap: TypeAlias = Mapping[LabelKey, LabelValue]
LocalityString: TypeAlias = str  # "region/zone/subzone"

# Serialization types
JsonDict: TypeAlias = dict[str, Any]
