"""
Data model for association requests, sessions and scan results.
"""

import logging
import re
from datetime import datetime
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import MalformedIdentifier

logger = logging.getLogger(__name__)

BSSID_PATTERN = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


class SecurityMode(str, Enum):
    """Passphrase interpretation for a network specifier."""

    PSK = "PSK"
    SAE = "SAE"
    UNSPECIFIED = "UNSPECIFIED"

    @classmethod
    def from_wire(cls, name: str | None) -> "SecurityMode":
        """Map an application-layer certificate name (e.g. ``WPA3_SAE``) to a mode."""
        if not name:
            return cls.UNSPECIFIED
        upper = name.upper()
        if upper in ("WPA2_PSK", "PSK"):
            return cls.PSK
        if upper in ("WPA3_SAE", "SAE"):
            return cls.SAE
        return cls.UNSPECIFIED


class AssociationState(str, Enum):
    """Lifecycle of the single outstanding association request."""

    IDLE = "IDLE"
    REQUESTING = "REQUESTING"
    BOUND = "BOUND"
    FAILED = "FAILED"


class NetworkEventKind(str, Enum):
    AVAILABLE = "AVAILABLE"
    LOST = "LOST"
    UNAVAILABLE = "UNAVAILABLE"
    LOSING = "LOSING"


class NetworkHandle(BaseModel):
    """Opaque reference to an active network connection."""

    model_config = ConfigDict(frozen=True)

    id: str
    interface: str | None = None
    connection: str | None = None


class NetworkEvent(BaseModel):
    """A single notification from the platform connectivity layer."""

    model_config = ConfigDict(frozen=True)

    kind: NetworkEventKind
    handle: NetworkHandle | None = None
    max_ms_to_live: int | None = None
    reason: str | None = None

    @classmethod
    def available(cls, handle: NetworkHandle) -> "NetworkEvent":
        return cls(kind=NetworkEventKind.AVAILABLE, handle=handle)

    @classmethod
    def lost(cls, handle: NetworkHandle | None = None) -> "NetworkEvent":
        return cls(kind=NetworkEventKind.LOST, handle=handle)

    @classmethod
    def unavailable(cls, reason: str | None = None) -> "NetworkEvent":
        return cls(kind=NetworkEventKind.UNAVAILABLE, reason=reason)

    @classmethod
    def losing(cls, handle: NetworkHandle | None, max_ms_to_live: int = 0) -> "NetworkEvent":
        return cls(kind=NetworkEventKind.LOSING, handle=handle, max_ms_to_live=max_ms_to_live)


class ConnectionIntent(BaseModel):
    """Immutable description of the network the caller wants to join."""

    model_config = ConfigDict(frozen=True)

    identifier: str = Field(..., min_length=1, max_length=32, description="Network SSID")
    peer_identifier: str | None = Field(default=None, description="Access point BSSID")
    credential: str | None = Field(default=None, description="Passphrase")
    security_mode: SecurityMode = SecurityMode.PSK
    requires_internet_capability: bool = False
    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")

    @field_validator("identifier")
    @classmethod
    def validate_identifier(cls, v):
        if not v or len(v.strip()) == 0:
            raise ValueError("Network identifier cannot be empty")
        return v


def parse_peer_identifier(value: str | None) -> str | None:
    """Validate and normalise a BSSID.

    Returns None for an absent or empty value (empty is logged, not fatal) and
    raises MalformedIdentifier for anything that is not six hex octets.
    """
    if value is None:
        return None
    if value == "":
        logger.warning("Peer identifier should not be empty, ignoring it")
        return None
    if not BSSID_PATTERN.match(value):
        raise MalformedIdentifier(value)
    return value.upper()


class NetworkSpecifier(BaseModel):
    """Which network to join and how to authenticate to it."""

    model_config = ConfigDict(frozen=True)

    ssid: str
    bssid: str | None = None
    passphrase: str | None = None
    security_mode: SecurityMode = SecurityMode.PSK


class CapabilityFilter(BaseModel):
    """Declarative description of an acceptable network.

    ``internet`` True requires general internet reachability; False explicitly
    forgoes it (the network is used for local traffic only).
    """

    model_config = ConfigDict(frozen=True)

    transport: str = "wifi"
    internet: bool = False
    specifier: NetworkSpecifier


class PlatformCapabilities(BaseModel):
    """What the selected backend can do, detected once at startup."""

    model_config = ConfigDict(frozen=True)

    network_request: bool = False
    request_timeout: bool = False
    profile_association: bool = False
    process_binding: bool = False
    version: str | None = None


class AccessPoint(BaseModel):
    """A single scanned access point."""

    ssid: str
    bssid: str | None = None
    capabilities: str = ""
    frequency: int | None = None
    channel: int | None = None
    level: int = -100
    signal: int = 0
    is_connected: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)


class ScanResultsEvent(BaseModel):
    """Payload pushed to scanned-results listeners."""

    access_points: list[AccessPoint] = Field(default_factory=list)
    error: str | None = None


class CanStartScan(IntEnum):
    NOT_SUPPORTED = 0
    YES = 1
    NO_PERMISSION = 2
    RADIO_DISABLED = 3
    FAILED = 4


class CanGetScannedResults(IntEnum):
    NOT_SUPPORTED = 0
    YES = 1
    NO_PERMISSION = 2
    RADIO_DISABLED = 3
    FAILED = 4
