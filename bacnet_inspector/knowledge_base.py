"""
BACnet device knowledge base and TCP/ICMP health accumulator.

A knowledge base is built per decode pass. The generic pass and the deep
decode pass each own one; ``merge_knowledge`` combines them afterwards
without touching either input.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Set, Tuple

from .constants import (
    CONFIRMED_COV_NOTIFICATION,
    DEVICE_OBJECT_TYPE,
    STREAM_PROTOCOL,
    UNCONFIRMED_COV_NOTIFICATION,
)
from .detail_fields import (
    FieldKind,
    classified_items,
    confirmed_service_code,
    extract_digits,
    get_icmp_type,
    get_instances,
    get_object_types,
    is_name_key,
    is_vendor_key,
    unconfirmed_service_code,
)
from .models import DeviceIdentity, KnowledgeBaseSnapshot, PacketRecord, TcpHealthCounters

logger = logging.getLogger(__name__)

UNKNOWN_SOURCE = "Unknown"
ICMP_PROTOCOL = "ICMP"
DEVICE_PATTERN = "device,"
ANNOUNCEMENT_MARKERS = ("i-am", "iam")


class HealthCategory(Enum):
    """Health counter categories; values are TcpHealthCounters attributes."""

    RETRANSMISSION = "retransmissions"
    FAST_RETRANSMISSION = "fast_retransmissions"
    DUPLICATE_ACK = "duplicate_acks"
    RESET = "resets"
    LOST_SEGMENT = "lost_segments"
    OUT_OF_ORDER = "out_of_order"
    ZERO_WINDOW = "zero_window"
    KEEP_ALIVE = "keep_alive"


def classify_health_entry(key: Optional[str], value: Optional[str]) -> Optional[HealthCategory]:
    """Classify one detail entry into at most one health category.

    The tests run in a fixed precedence order and the first hit wins. Any
    entry mentioning "retransmission" is counted as a plain retransmission,
    so the fast-retransmission test only applies to entries that reach it.

    Args:
        key: Detail key
        value: Detail value

    Returns:
        The matching category, or None
    """
    k = (key or "").lower()
    v = (value or "").lower()

    if "retransmission" in k or "retransmission" in v:
        return HealthCategory.RETRANSMISSION
    if ("fast" in k and "retransmission" in k) or ("fast" in v and "retransmission" in v):
        return HealthCategory.FAST_RETRANSMISSION
    if ("duplicate" in k and "ack" in k) or ("duplicate" in v and "ack" in v):
        return HealthCategory.DUPLICATE_ACK
    if "reset" in k or "reset" in v or ("rst" in v and "tcp flags" in k):
        return HealthCategory.RESET
    if "lost_segment" in k or "lost segment" in v or "tcp lost segment" in k:
        return HealthCategory.LOST_SEGMENT
    if (
        "out_of_order" in k
        or "out of order" in v
        or "tcp out-of-order" in k
        or "tcp out of order" in v
    ):
        return HealthCategory.OUT_OF_ORDER
    if "zero_window" in k or "zero window" in v or ("window size" in k and "0" in v):
        return HealthCategory.ZERO_WINDOW
    if "keep_alive" in k or "keep alive" in v or "keepalive" in k or "keepalive" in v:
        return HealthCategory.KEEP_ALIVE
    return None


def is_icmp_unreachable(icmp_type: Optional[str]) -> bool:
    text = (icmp_type or "").lower()
    return "unreachable" in text or "type=3" in text


@dataclass
class IdentityObservation:
    """Identity candidates found in one record's details."""

    instance: Optional[str] = None
    device_name: Optional[str] = None
    vendor_id: Optional[str] = None
    announced: bool = False


def extract_identity(details: Optional[Mapping[str, str]]) -> IdentityObservation:
    """Scan a detail map once for identity candidates.

    Instance candidates are ranked: an explicit instance-number field, then
    a ``device,<digits>`` pattern in any value, then an object/device
    instance identifier field. The first candidate of each rank wins.

    Args:
        details: The record's detail map

    Returns:
        The observation; fields are None where nothing qualified
    """
    explicit: Optional[str] = None
    pattern: Optional[str] = None
    fallback: Optional[str] = None
    observation = IdentityObservation()

    for kind, key, value in classified_items(details):
        lowered = value.lower()

        if not observation.announced and any(marker in lowered for marker in ANNOUNCEMENT_MARKERS):
            observation.announced = True

        if explicit is None and kind is FieldKind.INSTANCE_NUMBER:
            explicit = extract_digits(value) or None

        if pattern is None and DEVICE_PATTERN in lowered:
            tail = lowered.split(DEVICE_PATTERN, 1)[1]
            pattern = extract_digits(tail) or None

        if fallback is None and kind is FieldKind.OBJECT_INSTANCE:
            fallback = extract_digits(value) or None

        if observation.device_name is None and is_name_key(key):
            if value.strip() and len(value) > 1:
                observation.device_name = value.strip()

        if observation.vendor_id is None and is_vendor_key(key):
            if value.strip():
                observation.vendor_id = value.strip()

    observation.instance = explicit or pattern or fallback
    return observation


def is_cov_notification(details: Optional[Mapping[str, str]]) -> bool:
    return (
        confirmed_service_code(details) == CONFIRMED_COV_NOTIFICATION
        or unconfirmed_service_code(details) == UNCONFIRMED_COV_NOTIFICATION
    )


def object_pairs(details: Optional[Mapping[str, str]]) -> List[Tuple[str, str]]:
    """Pair each object type of a record with its instance."""
    return list(zip(get_object_types(details), get_instances(details)))


def device_instance_of(pairs: List[Tuple[str, str]]) -> Optional[str]:
    """Instance of the Device object among the pairs, else the first instance."""
    for object_type, instance in pairs:
        if object_type == DEVICE_OBJECT_TYPE:
            return extract_digits(instance) or None
    if pairs:
        return extract_digits(pairs[0][1]) or None
    return None


def cov_combination_keys(device: str, pairs: List[Tuple[str, str]]) -> List[str]:
    """Build ``"<device>-<type>,<instance>"`` keys, e.g. ``"40211-2,19"``."""
    keys = []
    for object_type, instance in pairs:
        digits = extract_digits(instance)
        if digits:
            keys.append(f"{device}-{object_type},{digits}")
    return keys


class DeviceKnowledgeBase:
    """Endpoint to BACnet identity map plus transport health counters.

    Instance ids are overwritten only by I-Am style announcements; any
    other frame writes one only if the address has none yet. Device names
    and vendor ids are always first-writer-wins.
    """

    def __init__(self):
        self.ip_to_instance: Dict[str, str] = {}
        self.ip_to_device_name: Dict[str, str] = {}
        self.ip_to_vendor_id: Dict[str, str] = {}
        # Addresses whose instance came from an announcement
        self.announced: Set[str] = set()
        self.all_devices: Set[str] = set()
        self.cov_combination_counts: Dict[str, int] = {}
        self.tcp_metrics = TcpHealthCounters()

    def reset(self) -> None:
        """Forget everything; called when a new capture file begins."""
        self.__init__()

    def process_packet(self, record: PacketRecord) -> None:
        """Feed one record to both the identity learner and the health counters."""
        self.learn_identity(record)
        self.accumulate_health(record)

    def learn_identity(self, record: PacketRecord) -> None:
        """Learn identity information from a BACnet record.

        Records that are not BACnet are ignored entirely.
        """
        if not record.is_bacnet:
            return

        source = record.source_ip.strip() if record.source_ip and record.source_ip.strip() else UNKNOWN_SOURCE
        if source != UNKNOWN_SOURCE:
            self.all_devices.add(source)

        if not record.details:
            return

        observation = extract_identity(record.details)
        if observation.instance:
            if observation.announced:
                previous = self.ip_to_instance.get(source)
                if previous and previous != observation.instance:
                    logger.debug("%s re-announced as %s (was %s)", source, observation.instance, previous)
                self.ip_to_instance[source] = observation.instance
                self.announced.add(source)
            elif source not in self.ip_to_instance:
                self.ip_to_instance[source] = observation.instance

        if observation.device_name and source not in self.ip_to_device_name:
            self.ip_to_device_name[source] = observation.device_name
        if observation.vendor_id and source not in self.ip_to_vendor_id:
            self.ip_to_vendor_id[source] = observation.vendor_id

        if is_cov_notification(record.details):
            self._count_cov(record)

    def _count_cov(self, record: PacketRecord) -> None:
        pairs = object_pairs(record.details)
        device = device_instance_of(pairs)
        if not device:
            return
        for key in cov_combination_keys(device, pairs):
            self.cov_combination_counts[key] = self.cov_combination_counts.get(key, 0) + 1

    def accumulate_health(self, record: PacketRecord) -> None:
        """Update the health counters from any record."""
        protocol = (record.protocol or "").upper()
        if protocol == STREAM_PROTOCOL:
            self.tcp_metrics.total_tcp_packets += 1

        if protocol == ICMP_PROTOCOL and is_icmp_unreachable(get_icmp_type(record.details)):
            self.tcp_metrics.icmp_unreachable += 1

        for key, value in (record.details or {}).items():
            category = classify_health_entry(key, value)
            if category is not None:
                attribute = category.value
                setattr(self.tcp_metrics, attribute, getattr(self.tcp_metrics, attribute) + 1)

    def instance_for(self, address: Optional[str]) -> Optional[str]:
        """Return the learned instance of an address, if any."""
        if not address or not address.strip():
            return None
        return self.ip_to_instance.get(address)

    def identity(self, address: Optional[str]) -> Optional[DeviceIdentity]:
        """Return what is known about an address, or None if it was never seen."""
        if not address or not address.strip():
            return None
        known = (self.all_devices, self.ip_to_instance, self.ip_to_device_name, self.ip_to_vendor_id)
        if not any(address in table for table in known):
            return None
        return DeviceIdentity(
            instance_id=self.ip_to_instance.get(address),
            device_name=self.ip_to_device_name.get(address),
            vendor_id=self.ip_to_vendor_id.get(address),
            announced=address in self.announced,
        )

    def summary(self) -> str:
        return (
            f"BACnet knowledge base: {len(self.ip_to_instance)} instances, "
            f"{len(self.ip_to_device_name)} device names, {len(self.ip_to_vendor_id)} vendor ids"
        )

    def top_cov_combinations(self, limit: int = 10) -> List[Tuple[str, int]]:
        """Most frequent COV combinations, excluding Device objects."""
        excluded = f"-{DEVICE_OBJECT_TYPE},"
        ranked = sorted(
            ((key, count) for key, count in self.cov_combination_counts.items() if excluded not in key),
            key=lambda item: item[1],
            reverse=True,
        )
        return ranked[:limit]

    def copy(self) -> "DeviceKnowledgeBase":
        clone = DeviceKnowledgeBase()
        clone.ip_to_instance = dict(self.ip_to_instance)
        clone.ip_to_device_name = dict(self.ip_to_device_name)
        clone.ip_to_vendor_id = dict(self.ip_to_vendor_id)
        clone.announced = set(self.announced)
        clone.all_devices = set(self.all_devices)
        clone.cov_combination_counts = dict(self.cov_combination_counts)
        clone.tcp_metrics = self.tcp_metrics.copy()
        return clone

    def to_snapshot(self) -> KnowledgeBaseSnapshot:
        """Project the knowledge base into its serializable form."""
        return KnowledgeBaseSnapshot(
            ip_to_instance=dict(self.ip_to_instance),
            ip_to_device_name=dict(self.ip_to_device_name),
            ip_to_vendor_id=dict(self.ip_to_vendor_id),
            announced=frozenset(self.announced),
            all_devices=frozenset(self.all_devices),
            cov_combination_counts=dict(self.cov_combination_counts),
            tcp_metrics=self.tcp_metrics.copy(),
        )

    @classmethod
    def from_snapshot(cls, snapshot: KnowledgeBaseSnapshot) -> "DeviceKnowledgeBase":
        """Rebuild a knowledge base from its serializable form."""
        kb = cls()
        kb.ip_to_instance = dict(snapshot.ip_to_instance)
        kb.ip_to_device_name = dict(snapshot.ip_to_device_name)
        kb.ip_to_vendor_id = dict(snapshot.ip_to_vendor_id)
        kb.announced = set(snapshot.announced)
        kb.all_devices = set(snapshot.all_devices)
        kb.cov_combination_counts = dict(snapshot.cov_combination_counts)
        kb.tcp_metrics = snapshot.tcp_metrics.copy()
        return kb


def merge_knowledge(
    primary: DeviceKnowledgeBase, enriched: DeviceKnowledgeBase
) -> DeviceKnowledgeBase:
    """Combine the generic-pass and deep-pass knowledge bases.

    The result is what replaying the enriched records after the primary
    ones would learn: announced instances from the enriched pass overwrite,
    other instances, names and vendor ids only fill gaps. Health counters
    come from the primary pass, which sees every frame. COV counts come
    from the enriched pass when it has any. Neither input is modified.

    Args:
        primary: Knowledge base of the generic pass
        enriched: Knowledge base of the deep decode pass

    Returns:
        A new knowledge base
    """
    merged = primary.copy()

    for address, instance in enriched.ip_to_instance.items():
        if address in enriched.announced:
            merged.ip_to_instance[address] = instance
            merged.announced.add(address)
        elif address not in merged.ip_to_instance:
            merged.ip_to_instance[address] = instance

    for address, name in enriched.ip_to_device_name.items():
        merged.ip_to_device_name.setdefault(address, name)
    for address, vendor in enriched.ip_to_vendor_id.items():
        merged.ip_to_vendor_id.setdefault(address, vendor)

    merged.all_devices |= enriched.all_devices

    if enriched.cov_combination_counts:
        merged.cov_combination_counts = dict(enriched.cov_combination_counts)

    logger.info(merged.summary())
    return merged
