"""
BACnet service breakdown over a set of records.

Counts service kinds by their numeric code, ranks repeated ReadProperty
requests and ranks change-of-value object combinations.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .constants import (
    CONFIRMED_COV_CODES,
    CONFIRMED_SERVICE_KINDS,
    DEVICE_OBJECT_TYPE,
    READ_PROPERTY_CODE,
    UNCONFIRMED_COV_CODES,
    UNCONFIRMED_SERVICE_KINDS,
    ServiceChoice,
    all_service_kinds,
)
from .detail_fields import (
    confirmed_service_code,
    extract_digits,
    generic_service_code,
    get_apdu_type,
    get_confirmed_service,
    get_initiating_device,
    get_instances,
    get_object_type,
    get_object_types,
    get_property,
    get_instance_number,
    get_unconfirmed_service,
    has_confirmed_service,
    has_unconfirmed_service,
    unconfirmed_service_code,
)
from .models import PacketRecord

UNKNOWN_ADDRESS = "unknown"
BROADCAST_ADDRESS = "255.255.255.255"
READ_PROPERTY_NAMES = ("readproperty", "read property", "read-property")


@dataclass
class RankedEntry:
    """One row of a top-N table."""

    label: str
    count: int
    per_minute: float = 0.0


@dataclass
class ServiceBreakdown:
    """Service kind counts over the BACnet records of a capture."""

    bacnet_packets: int = 0
    bacnet_bytes: int = 0
    broadcasts: int = 0
    duration_seconds: float = 1.0
    counts: Dict[str, int] = field(default_factory=lambda: {kind: 0 for kind in all_service_kinds()})

    def per_minute(self, kind: str) -> float:
        minutes = self.duration_seconds / 60.0
        return self.counts.get(kind, 0) / minutes if minutes > 0 else 0.0

    @property
    def broadcasts_per_second(self) -> float:
        return self.broadcasts / self.duration_seconds if self.duration_seconds > 0 else 0.0


def is_broadcast(record: PacketRecord) -> bool:
    destination = record.destination_ip
    if not destination or not destination.strip():
        return False
    return destination == BROADCAST_ADDRESS or destination.endswith(".255")


def capture_duration(records: Sequence[PacketRecord]) -> float:
    """Seconds between the first and last complete frame; 1 for fewer than two."""
    timestamps = [record.timestamp for record in records if not record.is_fragment]
    if len(timestamps) < 2:
        return 1.0
    return max(1e-6, max(timestamps) - min(timestamps))


def resolve_service_codes(details: Optional[Mapping[str, str]]) -> Tuple[Optional[int], Optional[int]]:
    """Find the confirmed and unconfirmed service codes of a record.

    When neither dedicated field is present, an undifferentiated service
    field is used and the APDU type decides the side: a type containing
    "Confirmed" means confirmed, anything else unconfirmed.

    Args:
        details: The record's detail map

    Returns:
        A tuple of (confirmed_code, unconfirmed_code)
    """
    confirmed = confirmed_service_code(details)
    unconfirmed = unconfirmed_service_code(details)
    if confirmed is None and unconfirmed is None:
        fallback = generic_service_code(details)
        if fallback is not None:
            if "Confirmed" in (get_apdu_type(details) or ""):
                confirmed = fallback
            else:
                unconfirmed = fallback
    return confirmed, unconfirmed


def bacnet_records(records: Iterable[PacketRecord]) -> List[PacketRecord]:
    """Complete BACnet frames; fragments are left out."""
    return [record for record in records if record.is_bacnet and not record.is_fragment]


def service_breakdown(records: Sequence[PacketRecord]) -> ServiceBreakdown:
    """Count BACnet service kinds.

    Args:
        records: The records to consider; non-BACnet records and fragments
            are ignored, and all complete frames define the time span used
            for rates

    Returns:
        The breakdown
    """
    breakdown = ServiceBreakdown(duration_seconds=capture_duration(records))

    for record in bacnet_records(records):
        breakdown.bacnet_packets += 1
        if record.details:
            confirmed, unconfirmed = resolve_service_codes(record.details)
            if confirmed is not None and confirmed in CONFIRMED_SERVICE_KINDS:
                breakdown.counts[CONFIRMED_SERVICE_KINDS[confirmed]] += 1
            if unconfirmed is not None and unconfirmed in UNCONFIRMED_SERVICE_KINDS:
                breakdown.counts[UNCONFIRMED_SERVICE_KINDS[unconfirmed]] += 1
            breakdown.bacnet_bytes += record.length
        if is_broadcast(record):
            breakdown.broadcasts += 1

    return breakdown


def who_is_count(breakdown: ServiceBreakdown) -> int:
    return breakdown.counts[UNCONFIRMED_SERVICE_KINDS[ServiceChoice.WHO_IS.value]]


def _rank(groups: Dict[str, int], duration_seconds: float, limit: int) -> List[RankedEntry]:
    minutes = duration_seconds / 60.0
    ranked = sorted(groups.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [
        RankedEntry(label, count, count / minutes if minutes > 0 else 0.0)
        for label, count in ranked
    ]


def is_read_property_request(details: Optional[Mapping[str, str]]) -> bool:
    """Whether a record is a confirmed ReadProperty request."""
    if not details:
        return False

    if not has_confirmed_service(details) and "confirmed" not in (get_apdu_type(details) or "").lower():
        return False

    code = confirmed_service_code(details)
    if code is None:
        code = generic_service_code(details)
    if code == READ_PROPERTY_CODE:
        return True

    text = (get_confirmed_service(details) or "").lower()
    return any(name in text for name in READ_PROPERTY_NAMES)


def read_property_label(record: PacketRecord) -> str:
    """Group label ``"src -> dst | object,instance property"``."""
    source = record.source_ip if record.source_ip and record.source_ip.strip() else UNKNOWN_ADDRESS
    destination = (
        record.destination_ip
        if record.destination_ip and record.destination_ip.strip()
        else UNKNOWN_ADDRESS
    )
    object_type = get_object_type(record.details) or UNKNOWN_ADDRESS
    instance = get_instance_number(record.details) or "?"
    prop = get_property(record.details) or "property"
    return f"{source} -> {destination} | {object_type},{instance} {prop}"


def top_read_properties(
    records: Sequence[PacketRecord], limit: int = 10
) -> Tuple[int, List[RankedEntry]]:
    """Rank repeated ReadProperty requests.

    Args:
        records: The records to consider
        limit: Maximum number of rows

    Returns:
        A tuple of (total ReadProperty requests, top rows)
    """
    groups: Dict[str, int] = {}
    total = 0
    for record in bacnet_records(records):
        if not is_read_property_request(record.details):
            continue
        total += 1
        label = read_property_label(record)
        groups[label] = groups.get(label, 0) + 1
    return total, _rank(groups, capture_duration(records), limit)


def is_cov_exchange(details: Optional[Mapping[str, str]]) -> bool:
    """Whether a record is part of a change-of-value exchange."""
    if has_unconfirmed_service(details):
        code = unconfirmed_service_code(details)
        if code in UNCONFIRMED_COV_CODES or "cov" in (get_unconfirmed_service(details) or "").lower():
            return True
    if has_confirmed_service(details):
        code = confirmed_service_code(details)
        if code in CONFIRMED_COV_CODES or "cov" in (get_confirmed_service(details) or "").lower():
            return True
    return False


def _cov_device(record: PacketRecord, pairs: List[Tuple[str, str]]) -> str:
    device = extract_digits(get_initiating_device(record.details))
    if not device:
        for object_type, instance in pairs:
            if object_type == DEVICE_OBJECT_TYPE:
                device = extract_digits(instance)
                break
    return device or record.source_ip or UNKNOWN_ADDRESS


def top_cov_combinations(
    records: Sequence[PacketRecord], limit: int = 10
) -> Tuple[int, List[RankedEntry]]:
    """Rank COV object combinations ``"<device>-<type>,<instance>"``.

    Only records carrying both an object type and an instance count.
    Combinations on the Device object itself are left out of the ranking.

    Args:
        records: The records to consider
        limit: Maximum number of rows

    Returns:
        A tuple of (total COV records counted, top rows)
    """
    groups: Dict[str, int] = {}
    total = 0
    for record in bacnet_records(records):
        if not record.details or not is_cov_exchange(record.details):
            continue
        pairs = list(zip(get_object_types(record.details), get_instances(record.details)))
        if not pairs:
            continue
        total += 1

        device = _cov_device(record, pairs)
        for object_type, instance in pairs:
            digits = extract_digits(instance) or instance
            key = f"{device}-{object_type},{digits}"
            groups[key] = groups.get(key, 0) + 1

    excluded = f"-{DEVICE_OBJECT_TYPE},"
    kept = {key: count for key, count in groups.items() if excluded not in key}
    return total, _rank(kept, capture_duration(records), limit)
