"""
Functions for collecting and aggregating capture traffic statistics.
"""

from datetime import datetime, timedelta
from typing import Dict, Hashable, Iterable, List, Optional, Tuple, TypeVar

from .constants import TIME_BUCKET_SECONDS
from .models import AggregateStatistics, PacketRecord, to_datetime

K = TypeVar("K", bound=Hashable)

UNKNOWN = "Unknown"


def create_empty_statistics() -> AggregateStatistics:
    """Create a new, empty AggregateStatistics object.

    Returns:
        An empty AggregateStatistics object
    """
    return AggregateStatistics()


def increment(counter: Dict[K, int], key: K, amount: int = 1) -> None:
    """Add to a counter, creating the key at zero on first use."""
    counter[key] = counter.get(key, 0) + amount


def bucket_start(timestamp: float, width: int = TIME_BUCKET_SECONDS) -> datetime:
    """Start of the fixed-width time bucket holding a timestamp.

    Buckets are aligned to multiples of ``width`` seconds since midnight
    (UTC), not to the first frame of the capture.

    Args:
        timestamp: Epoch seconds
        width: Bucket width in seconds

    Returns:
        The bucket start as an aware UTC datetime
    """
    moment = to_datetime(timestamp)
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    seconds_of_day = int((moment - midnight).total_seconds())
    return midnight + timedelta(seconds=(seconds_of_day // width) * width)


def hierarchical_key(record: PacketRecord) -> str:
    """``"base/application"`` when an application label is set, else ``"base"``."""
    base = record.protocol or UNKNOWN
    if record.application_protocol:
        return f"{base}/{record.application_protocol}"
    return base


class StatisticsAggregator:
    """Single-pass accumulator of AggregateStatistics.

    Fragment-flagged records are skipped; every dictionary is filled
    lazily as keys are first seen.
    """

    def __init__(self):
        self.stats = create_empty_statistics()
        self.skipped_fragments = 0

    def add(self, record: PacketRecord) -> None:
        """Account for one record."""
        if record.is_fragment:
            self.skipped_fragments += 1
            return

        stats = self.stats
        stats.total_packets += 1
        stats.total_bytes += record.length

        moment = to_datetime(record.timestamp)
        if stats.start_time is None or moment < stats.start_time:
            stats.start_time = moment
        if stats.end_time is None or moment > stats.end_time:
            stats.end_time = moment

        base = record.protocol or UNKNOWN
        increment(stats.protocol_count, base)
        increment(stats.protocol_bytes, base, record.length)

        key = hierarchical_key(record)
        increment(stats.hierarchical_protocol_count, key)
        increment(stats.hierarchical_protocol_bytes, key, record.length)

        if record.source_ip:
            increment(stats.ip_source_count, record.source_ip)
            increment(stats.ip_destination_count, record.destination_ip or UNKNOWN)

        if record.source_port > 0:
            increment(stats.source_port_count, record.source_port)
            increment(stats.destination_port_count, record.destination_port)

        bucket = bucket_start(record.timestamp)
        increment(stats.packets_per_bucket, bucket)
        increment(stats.bytes_per_bucket, bucket, record.length)

    def extend(self, records: Iterable[PacketRecord]) -> "StatisticsAggregator":
        for record in records:
            self.add(record)
        return self

    def result(self) -> AggregateStatistics:
        return self.stats


def calculate_statistics(records: Iterable[PacketRecord]) -> AggregateStatistics:
    """Compute statistics over the non-fragmented records.

    Args:
        records: All records of a capture, fragments included

    Returns:
        The aggregated statistics
    """
    return StatisticsAggregator().extend(records).result()


def top_entries(counter: Dict[K, int], limit: int = 10) -> List[Tuple[K, int]]:
    """Highest-count entries of a counter, ties in insertion order."""
    return sorted(counter.items(), key=lambda item: item[1], reverse=True)[:limit]


def top_source_ips(stats: AggregateStatistics, limit: int = 10) -> List[Tuple[str, int]]:
    return top_entries(stats.ip_source_count, limit)


def top_destination_ips(stats: AggregateStatistics, limit: int = 10) -> List[Tuple[str, int]]:
    return top_entries(stats.ip_destination_count, limit)


def top_ports(stats: AggregateStatistics, limit: int = 10) -> List[Tuple[int, int]]:
    """Ports ranked by combined source and destination frequency."""
    combined: Dict[int, int] = {}
    for table in (stats.source_port_count, stats.destination_port_count):
        for port, count in table.items():
            if port > 0:
                increment(combined, port, count)
    return top_entries(combined, limit)


def protocol_share(stats: AggregateStatistics, protocol: str) -> Optional[float]:
    """Percentage of frames whose hierarchical key is ``protocol``, None if empty."""
    if not stats.total_packets:
        return None
    return stats.hierarchical_protocol_count.get(protocol, 0) * 100.0 / stats.total_packets
