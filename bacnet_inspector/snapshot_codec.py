"""
Streaming, gzip-compressed JSON snapshots of a completed analysis.

The document is written one top-level member per line, and one packet per
line inside the ``packets`` array, so the writer never holds the
serialized form in memory.
"""

import gzip
import json
import logging
import re
import zlib
from datetime import datetime, timezone
from typing import Any, Callable, Dict, IO, List, Optional, TypeVar

from .constants import SNAPSHOT_FLUSH_BATCH, SNAPSHOT_PROGRESS_INTERVAL, SNAPSHOT_VERSION
from .errors import ResourceExhaustedError, SnapshotError
from .models import (
    AggregateStatistics,
    AnalysisSnapshot,
    KnowledgeBaseSnapshot,
    PacketRecord,
    TcpHealthCounters,
)
from .progress import ProgressCallback, emit_progress, percent_of

logger = logging.getLogger(__name__)

PHASE_SAVE = "Saving snapshot"

# Lines after which the header carries no more metadata
HEADER_END_KEYS = ("statistics", "bacnetDb", "packets")
MAX_HEADER_LINES = 16

T = TypeVar("T")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


TCP_COUNTER_KEYS: Dict[str, str] = {
    name: _camel(name) for name in TcpHealthCounters().to_dict()
}


def _isoformat(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment is not None else None


def parse_datetime(text: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


# Serialization


def statistics_to_dict(stats: AggregateStatistics) -> Dict[str, Any]:
    return {
        "totalPackets": stats.total_packets,
        "totalBytes": stats.total_bytes,
        "startTime": _isoformat(stats.start_time),
        "endTime": _isoformat(stats.end_time),
        "protocolCount": dict(stats.protocol_count),
        "protocolBytes": dict(stats.protocol_bytes),
        "hierarchicalProtocolCount": dict(stats.hierarchical_protocol_count),
        "hierarchicalProtocolBytes": dict(stats.hierarchical_protocol_bytes),
        "ipSourceCount": dict(stats.ip_source_count),
        "ipDestinationCount": dict(stats.ip_destination_count),
        "sourcePortCount": {str(port): count for port, count in stats.source_port_count.items()},
        "destinationPortCount": {
            str(port): count for port, count in stats.destination_port_count.items()
        },
        "packetsPerBucket": {
            moment.isoformat(): count for moment, count in stats.packets_per_bucket.items()
        },
        "bytesPerBucket": {
            moment.isoformat(): count for moment, count in stats.bytes_per_bucket.items()
        },
    }


def knowledge_to_dict(kb: KnowledgeBaseSnapshot) -> Dict[str, Any]:
    counters = kb.tcp_metrics.to_dict()
    return {
        "ipToInstance": dict(kb.ip_to_instance),
        "ipToDeviceName": dict(kb.ip_to_device_name),
        "ipToVendorId": dict(kb.ip_to_vendor_id),
        "announced": sorted(kb.announced),
        "allDevices": sorted(kb.all_devices),
        "covCombinationCounts": dict(kb.cov_combination_counts),
        "tcpMetrics": {TCP_COUNTER_KEYS[name]: value for name, value in counters.items()},
    }


def _write_member(writer: IO[str], key: str, value: Any) -> None:
    writer.write(f"  {json.dumps(key)}: {json.dumps(value, separators=(',', ':'))},\n")


def save_snapshot(
    path: str,
    snapshot: AnalysisSnapshot,
    only_protocol_packets: Optional[bool] = None,
    progress: Optional[ProgressCallback] = None,
) -> int:
    """Write a snapshot file.

    Args:
        path: Destination file
        snapshot: The analysis to persist
        only_protocol_packets: Keep only BACnet records in the packet
            array; defaults to the snapshot's own policy
        progress: Optional progress callback

    Returns:
        Number of packets written

    Raises:
        SnapshotError: If the file cannot be written
        ResourceExhaustedError: If memory runs out while serializing
    """
    only_bacnet = snapshot.only_protocol_packets if only_protocol_packets is None else only_protocol_packets
    packets = [p for p in snapshot.packets if p.is_bacnet] if only_bacnet else list(snapshot.packets)
    total = len(packets)
    written = 0

    try:
        with gzip.open(path, "wt", encoding="utf-8") as writer:
            writer.write("{\n")
            _write_member(writer, "version", snapshot.version)
            _write_member(writer, "createdAt", snapshot.created_at.isoformat())
            _write_member(writer, "onlyProtocolPackets", only_bacnet)
            if snapshot.source_file:
                _write_member(writer, "originalPcapFile", snapshot.source_file)
            if snapshot.statistics is not None:
                _write_member(writer, "statistics", statistics_to_dict(snapshot.statistics))
            if snapshot.knowledge_base is not None:
                _write_member(writer, "bacnetDb", knowledge_to_dict(snapshot.knowledge_base))

            writer.write('  "packets": [\n')
            for packet in packets:
                line = json.dumps(packet.to_dict(), separators=(",", ":"))
                written += 1
                writer.write(f"    {line}{',' if written < total else ''}\n")

                if written % SNAPSHOT_FLUSH_BATCH == 0:
                    writer.flush()
                if written % SNAPSHOT_PROGRESS_INTERVAL == 0 or written == total:
                    emit_progress(
                        progress,
                        PHASE_SAVE,
                        f"Saved {written} of {total} packets",
                        percent_of(written, total),
                    )
            writer.write("  ]\n}\n")
    except MemoryError as err:
        raise ResourceExhaustedError(
            "Not enough memory to save the snapshot", records_completed=written
        ) from err
    except OSError as err:
        raise SnapshotError(
            f"Cannot write snapshot {path}: {err}. Check that enough disk space is available."
        ) from err

    logger.info("Saved %d packets to %s", written, path)
    return written


# Deserialization


def _field(data: Dict[str, Any], key: str, parse: Callable[[Any], T], default: T, where: str) -> T:
    if key not in data or data[key] is None:
        return default
    try:
        return parse(data[key])
    except (TypeError, ValueError, AttributeError) as err:
        logger.warning("Ignoring malformed %s.%s: %s", where, key, err)
        return default


def _json_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"expected true or false, got {value!r}")
    return value


def _str_int_map(value: Any) -> Dict[str, int]:
    return {str(k): int(v) for k, v in dict(value).items()}


def _int_int_map(value: Any) -> Dict[int, int]:
    return {int(k): int(v) for k, v in dict(value).items()}


def _datetime_int_map(value: Any) -> Dict[datetime, int]:
    return {parse_datetime(k): int(v) for k, v in dict(value).items()}


def _str_str_map(value: Any) -> Dict[str, str]:
    return {str(k): str(v) for k, v in dict(value).items()}


def statistics_from_dict(data: Any) -> AggregateStatistics:
    """Rebuild statistics, replacing each malformed member with its empty default."""
    if not isinstance(data, dict):
        logger.warning("Ignoring malformed statistics section")
        return AggregateStatistics()

    where = "statistics"
    return AggregateStatistics(
        total_packets=_field(data, "totalPackets", int, 0, where),
        total_bytes=_field(data, "totalBytes", int, 0, where),
        start_time=_field(data, "startTime", parse_datetime, None, where),
        end_time=_field(data, "endTime", parse_datetime, None, where),
        protocol_count=_field(data, "protocolCount", _str_int_map, {}, where),
        protocol_bytes=_field(data, "protocolBytes", _str_int_map, {}, where),
        hierarchical_protocol_count=_field(data, "hierarchicalProtocolCount", _str_int_map, {}, where),
        hierarchical_protocol_bytes=_field(data, "hierarchicalProtocolBytes", _str_int_map, {}, where),
        ip_source_count=_field(data, "ipSourceCount", _str_int_map, {}, where),
        ip_destination_count=_field(data, "ipDestinationCount", _str_int_map, {}, where),
        source_port_count=_field(data, "sourcePortCount", _int_int_map, {}, where),
        destination_port_count=_field(data, "destinationPortCount", _int_int_map, {}, where),
        packets_per_bucket=_field(data, "packetsPerBucket", _datetime_int_map, {}, where),
        bytes_per_bucket=_field(data, "bytesPerBucket", _datetime_int_map, {}, where),
    )


def _tcp_counters(value: Any) -> TcpHealthCounters:
    data = dict(value)
    counters = TcpHealthCounters()
    for name, key in TCP_COUNTER_KEYS.items():
        setattr(counters, name, max(0, _field(data, key, int, 0, "bacnetDb.tcpMetrics")))
    return counters


def knowledge_from_dict(data: Any) -> Optional[KnowledgeBaseSnapshot]:
    if not isinstance(data, dict):
        if data is not None:
            logger.warning("Ignoring malformed knowledge base section")
        return None

    where = "bacnetDb"
    return KnowledgeBaseSnapshot(
        ip_to_instance=_field(data, "ipToInstance", _str_str_map, {}, where),
        ip_to_device_name=_field(data, "ipToDeviceName", _str_str_map, {}, where),
        ip_to_vendor_id=_field(data, "ipToVendorId", _str_str_map, {}, where),
        announced=_field(data, "announced", lambda v: frozenset(str(x) for x in v), frozenset(), where),
        all_devices=_field(data, "allDevices", lambda v: frozenset(str(x) for x in v), frozenset(), where),
        cov_combination_counts=_field(data, "covCombinationCounts", _str_int_map, {}, where),
        tcp_metrics=_field(data, "tcpMetrics", _tcp_counters, TcpHealthCounters(), where),
    )


def packet_from_dict(data: Any) -> Optional[PacketRecord]:
    """Rebuild a record, skipping malformed fields; None if it has no frame number.

    Raw bytes are never restored.
    """
    if not isinstance(data, dict):
        logger.warning("Skipping malformed packet entry")
        return None
    try:
        number = int(data["number"])
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping packet entry without a valid frame number")
        return None

    where = f"packet[{number}]"
    return PacketRecord(
        number=number,
        timestamp=_field(data, "timestamp", float, 0.0, where),
        length=_field(data, "length", int, 0, where),
        source_mac=_field(data, "sourceMac", str, None, where),
        destination_mac=_field(data, "destinationMac", str, None, where),
        ethernet_type=_field(data, "ethernetType", str, None, where),
        source_ip=_field(data, "sourceIp", str, None, where),
        destination_ip=_field(data, "destinationIp", str, None, where),
        protocol=_field(data, "protocol", str, None, where),
        ttl=_field(data, "ttl", int, 0, where),
        source_port=_field(data, "sourcePort", int, 0, where),
        destination_port=_field(data, "destinationPort", int, 0, where),
        application_protocol=_field(data, "applicationProtocol", str, None, where),
        details=_field(data, "details", _str_str_map, {}, where),
        is_fragment=_field(data, "isFragment", _json_bool, False, where),
    )


def _read_document(path: str) -> Dict[str, Any]:
    try:
        with gzip.open(path, "rt", encoding="utf-8") as reader:
            document = json.load(reader)
    except MemoryError as err:
        raise ResourceExhaustedError("Not enough memory to load the snapshot") from err
    except (OSError, EOFError, ValueError, zlib.error) as err:
        raise SnapshotError(f"Cannot read snapshot {path}: {err}") from err

    if not isinstance(document, dict):
        raise SnapshotError(f"Not a snapshot document: {path}")
    return document


def load_snapshot(path: str) -> AnalysisSnapshot:
    """Read a snapshot file.

    Args:
        path: Snapshot file written by save_snapshot

    Returns:
        The restored analysis, without raw packet bytes

    Raises:
        SnapshotError: If the file is not a readable gzip JSON document
        ResourceExhaustedError: If memory runs out while loading
    """
    document = _read_document(path)
    where = "snapshot"

    packets: List[PacketRecord] = []
    raw_packets = document.get("packets")
    if isinstance(raw_packets, list):
        for entry in raw_packets:
            record = packet_from_dict(entry)
            if record is not None:
                packets.append(record)
    elif raw_packets is not None:
        logger.warning("Ignoring malformed packets section")

    only_bacnet = _field(document, "onlyProtocolPackets", _json_bool, True, where)

    snapshot = AnalysisSnapshot(
        version=_field(document, "version", str, SNAPSHOT_VERSION, where),
        source_file=_field(document, "originalPcapFile", str, None, where),
        statistics=statistics_from_dict(document["statistics"]) if "statistics" in document else None,
        knowledge_base=knowledge_from_dict(document.get("bacnetDb")),
        packets=packets,
        only_protocol_packets=only_bacnet,
    )
    created_at = _field(document, "createdAt", parse_datetime, None, where)
    if created_at is not None:
        snapshot.created_at = created_at

    logger.info("Loaded %d packets from %s", len(packets), path)
    return snapshot


_HEADER_LINE = re.compile(r'^\s*"(?P<key>[^"]+)"\s*:\s*(?P<value>.*?),?\s*$')


def _header_metadata(path: str) -> Optional[Dict[str, Any]]:
    """Read the metadata lines at the top of a snapshot, None if the layout differs."""
    metadata: Dict[str, Any] = {}
    with gzip.open(path, "rt", encoding="utf-8") as reader:
        if reader.readline().strip() != "{":
            return None
        for _ in range(MAX_HEADER_LINES):
            line = reader.readline()
            if not line:
                break
            match = _HEADER_LINE.match(line)
            if match is None:
                return None
            key = match.group("key")
            if key in HEADER_END_KEYS:
                break
            metadata[key] = json.loads(match.group("value"))
    return metadata


def is_valid_snapshot(path: str) -> bool:
    """Check that a file is a snapshot with a version and creation time.

    Only the header lines are read when the file has the layout written by
    save_snapshot; other layouts are parsed in full.
    """
    try:
        metadata = _header_metadata(path)
        if metadata is None:
            metadata = _read_document(path)
        return bool(metadata.get("version")) and bool(metadata.get("createdAt"))
    except (OSError, EOFError, ValueError, zlib.error, SnapshotError, ResourceExhaustedError) as err:
        logger.debug("%s is not a valid snapshot: %s", path, err)
        return False
