"""
Data models for the BACnet capture inspector.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

from .constants import BACNET_PORT, BACNET_PORT_LAST, BACNET_PROTOCOL, SNAPSHOT_VERSION


def in_bacnet_port_range(port: int) -> bool:
    return BACNET_PORT <= port <= BACNET_PORT_LAST


def to_datetime(timestamp: float) -> datetime:
    """Convert a capture timestamp (epoch seconds) to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


@dataclass
class PacketRecord:
    """One decoded frame of a capture file.

    ``number`` is the 1-based position of the frame in its capture and is
    the key shared by the generic and the deep decode pass.
    """

    number: int
    timestamp: float = 0.0
    length: int = 0

    # Link layer
    source_mac: Optional[str] = None
    destination_mac: Optional[str] = None
    ethernet_type: Optional[str] = None

    # Network layer
    source_ip: Optional[str] = None
    destination_ip: Optional[str] = None
    protocol: Optional[str] = None
    ttl: int = 0

    # Transport layer
    source_port: int = 0
    destination_port: int = 0

    # Application layer
    application_protocol: Optional[str] = None

    details: Dict[str, str] = field(default_factory=dict)
    raw_data: Optional[bytes] = None
    is_fragment: bool = False

    @property
    def display_protocol(self) -> str:
        """Application label if known, transport label otherwise."""
        return self.application_protocol or self.protocol or ""

    @property
    def is_bacnet(self) -> bool:
        """Whether the record belongs to the protocol of interest.

        A record qualifies by its application label or by either port
        falling in the BACnet/IP port range.
        """
        label = (self.application_protocol or "").upper()
        return (
            label == BACNET_PROTOCOL.upper()
            or in_bacnet_port_range(self.destination_port)
            or in_bacnet_port_range(self.source_port)
        )

    @property
    def summary(self) -> str:
        protocol = (
            f"{self.protocol}/{self.application_protocol}"
            if self.application_protocol
            else self.protocol
        )
        clock = to_datetime(self.timestamp).strftime("%H:%M:%S.%f")[:-3]
        return (
            f"[{self.number}] {clock} {self.source_ip}:{self.source_port} -> "
            f"{self.destination_ip}:{self.destination_port} ({protocol})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert the record to a JSON-compatible dictionary.

        Raw bytes are never included.
        """
        data: Dict[str, Any] = {
            "number": self.number,
            "timestamp": self.timestamp,
            "length": self.length,
            "sourceMac": self.source_mac,
            "destinationMac": self.destination_mac,
            "ethernetType": self.ethernet_type,
            "sourceIp": self.source_ip,
            "destinationIp": self.destination_ip,
            "protocol": self.protocol,
            "ttl": self.ttl,
            "sourcePort": self.source_port,
            "destinationPort": self.destination_port,
            "applicationProtocol": self.application_protocol,
            "details": dict(self.details),
            "isFragment": self.is_fragment,
        }
        return {key: value for key, value in data.items() if value is not None}


@dataclass
class DeviceIdentity:
    """What has been learned about one BACnet endpoint."""

    instance_id: Optional[str] = None
    device_name: Optional[str] = None
    vendor_id: Optional[str] = None
    # Whether instance_id came from an I-Am style announcement
    announced: bool = False


@dataclass
class TcpHealthCounters:
    """Monotonic transport health counters for one capture pass."""

    total_tcp_packets: int = 0
    retransmissions: int = 0
    fast_retransmissions: int = 0
    duplicate_acks: int = 0
    resets: int = 0
    lost_segments: int = 0
    out_of_order: int = 0
    zero_window: int = 0
    keep_alive: int = 0
    icmp_unreachable: int = 0

    @property
    def loss_events_total(self) -> int:
        """Sum of every error category."""
        return (
            self.retransmissions
            + self.fast_retransmissions
            + self.duplicate_acks
            + self.resets
            + self.lost_segments
            + self.out_of_order
            + self.zero_window
            + self.keep_alive
            + self.icmp_unreachable
        )

    @property
    def loss_percent(self) -> float:
        """Loss events as a percentage of all TCP frames."""
        if self.total_tcp_packets <= 0:
            return 0.0
        return self.loss_events_total * 100.0 / self.total_tcp_packets

    def copy(self) -> "TcpHealthCounters":
        return TcpHealthCounters(**self.to_dict())

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_tcp_packets": self.total_tcp_packets,
            "retransmissions": self.retransmissions,
            "fast_retransmissions": self.fast_retransmissions,
            "duplicate_acks": self.duplicate_acks,
            "resets": self.resets,
            "lost_segments": self.lost_segments,
            "out_of_order": self.out_of_order,
            "zero_window": self.zero_window,
            "keep_alive": self.keep_alive,
            "icmp_unreachable": self.icmp_unreachable,
        }


@dataclass
class AggregateStatistics:
    """Single-pass traffic statistics over the non-fragmented records."""

    total_packets: int = 0
    total_bytes: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    protocol_count: Dict[str, int] = field(default_factory=dict)
    protocol_bytes: Dict[str, int] = field(default_factory=dict)
    # Keys like "Udp/BACnet" or "Tcp"
    hierarchical_protocol_count: Dict[str, int] = field(default_factory=dict)
    hierarchical_protocol_bytes: Dict[str, int] = field(default_factory=dict)

    ip_source_count: Dict[str, int] = field(default_factory=dict)
    ip_destination_count: Dict[str, int] = field(default_factory=dict)
    source_port_count: Dict[int, int] = field(default_factory=dict)
    destination_port_count: Dict[int, int] = field(default_factory=dict)

    # Keyed by bucket start
    packets_per_bucket: Dict[datetime, int] = field(default_factory=dict)
    bytes_per_bucket: Dict[datetime, int] = field(default_factory=dict)

    @property
    def average_packet_size(self) -> float:
        return self.total_bytes / self.total_packets if self.total_packets else 0.0

    @property
    def duration_seconds(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def packets_per_second(self) -> float:
        duration = self.duration_seconds
        return self.total_packets / duration if duration > 0 else 0.0

    @property
    def megabits_per_second(self) -> float:
        duration = self.duration_seconds
        return (self.total_bytes * 8) / (duration * 1_000_000) if duration > 0 else 0.0


@dataclass(frozen=True)
class KnowledgeBaseSnapshot:
    """Serializable projection of a device knowledge base."""

    ip_to_instance: Dict[str, str] = field(default_factory=dict)
    ip_to_device_name: Dict[str, str] = field(default_factory=dict)
    ip_to_vendor_id: Dict[str, str] = field(default_factory=dict)
    announced: FrozenSet[str] = frozenset()
    all_devices: FrozenSet[str] = frozenset()
    cov_combination_counts: Dict[str, int] = field(default_factory=dict)
    tcp_metrics: TcpHealthCounters = field(default_factory=TcpHealthCounters)


@dataclass
class AnalysisSnapshot:
    """A persisted projection of one completed analysis run."""

    version: str = SNAPSHOT_VERSION
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source_file: Optional[str] = None
    statistics: Optional[AggregateStatistics] = None
    knowledge_base: Optional[KnowledgeBaseSnapshot] = None
    packets: List[PacketRecord] = field(default_factory=list)
    only_protocol_packets: bool = True
