"""
Constants and configuration for the BACnet capture inspector.
"""

from enum import Enum
from typing import Dict, Final, List, Optional, Tuple

# Protocol of interest
BACNET_PROTOCOL: Final[str] = "BACnet"
BACNET_PORT: Final[int] = 47808
BACNET_PORT_RANGE_SIZE: Final[int] = 16
BACNET_PORT_LAST: Final[int] = BACNET_PORT + BACNET_PORT_RANGE_SIZE - 1

# Transport protocol whose health is tracked
STREAM_PROTOCOL: Final[str] = "TCP"

# Cadences
PROGRESS_EVERY_FRAMES: Final[int] = 5000
CANCEL_CHECK_EVERY_FRAMES: Final[int] = 1000
DEEP_PROGRESS_EVERY_RECORDS: Final[int] = 5000
SNAPSHOT_FLUSH_BATCH: Final[int] = 10000
SNAPSHOT_PROGRESS_INTERVAL: Final[int] = 50000

# Statistics
TIME_BUCKET_SECONDS: Final[int] = 5 * 60

# Snapshot format
SNAPSHOT_VERSION: Final[str] = "1.0"

# Deep decoder
TSHARK_ENV_VAR: Final[str] = "BACNET_INSPECTOR_TSHARK"
TSHARK_CANDIDATE_PATHS: Final[Tuple[str, ...]] = (
    "/usr/bin/tshark",
    "/usr/local/bin/tshark",
    "/opt/homebrew/bin/tshark",
    "/Applications/Wireshark.app/Contents/MacOS/tshark",
    r"C:\Program Files\Wireshark\tshark.exe",
    r"C:\Program Files (x86)\Wireshark\tshark.exe",
)
TSHARK_DISPLAY_FILTER: Final[str] = "bvlc || bacnet || bacapp"
TSHARK_FIELDS: Final[Tuple[str, ...]] = (
    "frame.number",
    "frame.time_epoch",
    "frame.len",
    "eth.src",
    "eth.dst",
    "eth.type",
    "ip.src",
    "ip.dst",
    "ip.proto",
    "ip.ttl",
    "udp.srcport",
    "udp.dstport",
    "tcp.srcport",
    "tcp.dstport",
    "bacapp.type",
    "bacapp.confirmed_service",
    "bacapp.unconfirmed_service",
    "bacapp.invoke_id",
    "bacapp.objectType",
    "bacapp.instance_number",
    "bacapp.property_identifier",
    "bacapp.vendor_identifier",
    "bacapp.object_name",
)

# IP protocol numbers as reported by the deep decoder
IP_PROTOCOL_NAMES: Final[Dict[str, str]] = {
    "1": "ICMP",
    "2": "IGMP",
    "6": "TCP",
    "17": "UDP",
}

# BACnet object type number of the Device object
DEVICE_OBJECT_TYPE: Final[str] = "8"


class ServiceChoice(Enum):
    """BACnet unconfirmed service choices used for device discovery."""
    I_AM = 0
    I_HAVE = 1
    WHO_HAS = 7
    WHO_IS = 8


# Service kinds keyed by the code found in a confirmed service field
CONFIRMED_SERVICE_KINDS: Final[Dict[int, str]] = {
    1: "confirmedCOVNotification",
    2: "confirmedEventNotification",
    5: "subscribeCOV",
    12: "readProperty",
    14: "readPropertyMultiple",
    15: "writeProperty",
    16: "writePropertyMultiple",
    28: "subscribeCOVProperty",
}

# Service kinds keyed by the code found in an unconfirmed service field
UNCONFIRMED_SERVICE_KINDS: Final[Dict[int, str]] = {
    ServiceChoice.I_AM.value: "i-Am",
    ServiceChoice.I_HAVE.value: "i-Have",
    2: "simpleAck",
    3: "complexAck",
    5: "error",
    ServiceChoice.WHO_HAS.value: "who-Has",
    ServiceChoice.WHO_IS.value: "who-Is",
}

# Codes that mark a change-of-value exchange
CONFIRMED_COV_CODES: Final[Tuple[int, ...]] = (1, 5, 28)
UNCONFIRMED_COV_CODES: Final[Tuple[int, ...]] = (2,)

# Notification codes the knowledge base counts object combinations for
CONFIRMED_COV_NOTIFICATION: Final[int] = 1
UNCONFIRMED_COV_NOTIFICATION: Final[int] = 2

READ_PROPERTY_CODE: Final[int] = 12

# APDU type names as the deep decoder displays them
APDU_TYPE_NAMES: Final[Dict[int, str]] = {
    0: "Confirmed-REQ",
    1: "Unconfirmed-REQ",
    2: "SimpleACK",
    3: "Complex-ACK",
    4: "Segment-ACK",
    5: "Error",
    6: "Reject",
    7: "Abort",
}


class ServiceChoiceMapping:
    """Utilities for working with BACnet service codes."""

    @staticmethod
    def get_service_kind(code: int, confirmed: bool) -> Optional[str]:
        """Get the service kind name for a service code.

        Args:
            code: The numeric service code
            confirmed: Whether the code came from a confirmed service field

        Returns:
            The service kind name, or None if not recognized
        """
        table = CONFIRMED_SERVICE_KINDS if confirmed else UNCONFIRMED_SERVICE_KINDS
        return table.get(code)

    @staticmethod
    def is_recognized(code: int, confirmed: bool) -> bool:
        """Check if the service code is in the fixed service table."""
        table = CONFIRMED_SERVICE_KINDS if confirmed else UNCONFIRMED_SERVICE_KINDS
        return code in table

    @staticmethod
    def decorate(code: int, confirmed: bool) -> str:
        """Render a service code as ``name(code)``, or the bare code if unknown."""
        kind = ServiceChoiceMapping.get_service_kind(code, confirmed)
        return f"{kind}({code})" if kind else str(code)


def all_service_kinds() -> List[str]:
    """All service kind names, confirmed first, in table order."""
    return list(CONFIRMED_SERVICE_KINDS.values()) + list(UNCONFIRMED_SERVICE_KINDS.values())
