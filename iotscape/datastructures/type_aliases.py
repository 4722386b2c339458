"""
Semantic type aliases for iotscape.

These aliases keep signatures self-documenting: a ``RequestId`` and a
``ServiceName`` are both strings on the wire but mean different things.
"""

from typing import Any

# Time and timestamp types
type Timestamp = float
type DurationSeconds = float

# Identifiers
type RequestId = str
type ClientId = str
type ServiceName = str
type DeviceId = str
type MethodName = str
type EventName = str

# Network types
type HostAddress = str
type PortNumber = int
type PeerAddress = tuple[str, int]
type UrlString = str

# Payload types
type JsonValue = Any
type JsonDict = dict[str, Any]
