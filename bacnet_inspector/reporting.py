"""
Reporting functions for the BACnet capture inspector.
"""

from typing import List, Optional, Sequence

from .knowledge_base import DeviceKnowledgeBase
from .models import (
    AggregateStatistics,
    AnalysisSnapshot,
    DeviceIdentity,
    PacketRecord,
    TcpHealthCounters,
)
from .services import ServiceBreakdown, service_breakdown, top_cov_combinations, top_read_properties
from .stats_collector import top_destination_ips, top_ports, top_source_ips, top_entries

TOP_N = 10


def generate_summary_report(stats: AggregateStatistics, fragments: Optional[int] = None) -> List[str]:
    """Generate the capture totals section.

    Args:
        stats: Aggregated statistics
        fragments: Number of fragment frames left out of the statistics, if known

    Returns:
        A list of report lines
    """
    report_lines = ["\n=== Capture Summary ==="]
    report_lines.append(f"  Frames: {stats.total_packets}")
    if fragments is not None:
        report_lines.append(f"  Fragments (excluded): {fragments}")
    report_lines.append(f"  Bytes: {stats.total_bytes}")
    if stats.start_time is not None and stats.end_time is not None:
        report_lines.append(f"  Start: {stats.start_time.isoformat()}")
        report_lines.append(f"  End: {stats.end_time.isoformat()}")
    report_lines.append(f"  Duration: {stats.duration_seconds:.1f} s")
    report_lines.append(f"  Average Frame Size: {stats.average_packet_size:.1f} bytes")
    report_lines.append(f"  Frames/s: {stats.packets_per_second:.2f}")
    report_lines.append(f"  Throughput: {stats.megabits_per_second:.3f} Mbit/s")
    return report_lines


def generate_protocol_report(stats: AggregateStatistics) -> List[str]:
    """Generate the protocol hierarchy section."""
    report_lines = ["\n=== Protocol Hierarchy ==="]
    if not stats.total_packets:
        report_lines.append("  No frames")
        return report_lines

    for key, count in top_entries(stats.hierarchical_protocol_count, len(stats.hierarchical_protocol_count)):
        share = count * 100.0 / stats.total_packets
        size = stats.hierarchical_protocol_bytes.get(key, 0)
        report_lines.append(f"  {key}: {count} frames ({share:.1f}%), {size} bytes")
    return report_lines


def generate_talkers_report(stats: AggregateStatistics) -> List[str]:
    """Generate the top endpoints and ports section."""
    report_lines = ["\n=== Top Talkers ==="]

    report_lines.append("  Sources:")
    for address, count in top_source_ips(stats, TOP_N):
        report_lines.append(f"    {address}: {count}")

    report_lines.append("  Destinations:")
    for address, count in top_destination_ips(stats, TOP_N):
        report_lines.append(f"    {address}: {count}")

    report_lines.append("  Ports:")
    for port, count in top_ports(stats, TOP_N):
        report_lines.append(f"    {port}: {count}")
    return report_lines


def generate_services_report(breakdown: ServiceBreakdown, records: Sequence[PacketRecord]) -> List[str]:
    """Generate the BACnet service section.

    Args:
        breakdown: Service kind counts
        records: The records the breakdown was computed from

    Returns:
        A list of report lines
    """
    report_lines = ["\n=== BACnet Services ==="]
    report_lines.append(f"  BACnet Frames: {breakdown.bacnet_packets}")
    report_lines.append(
        f"  Broadcasts: {breakdown.broadcasts} ({breakdown.broadcasts_per_second:.2f}/s)"
    )
    for kind, count in breakdown.counts.items():
        if count:
            report_lines.append(f"    {kind}: {count} ({breakdown.per_minute(kind):.1f}/min)")

    total, rows = top_read_properties(records, TOP_N)
    if total:
        report_lines.append(f"\n  Top ReadProperty Requests ({total} total):")
        for row in rows:
            report_lines.append(f"    {row.label}: {row.count} ({row.per_minute:.1f}/min)")

    total, rows = top_cov_combinations(records, TOP_N)
    if total:
        report_lines.append(f"\n  Top COV Objects ({total} COV frames):")
        for row in rows:
            report_lines.append(f"    {row.label}: {row.count} ({row.per_minute:.1f}/min)")
    return report_lines


def generate_devices_report(kb: DeviceKnowledgeBase) -> List[str]:
    """Generate a report of the BACnet devices seen on the wire.

    Args:
        kb: The knowledge base of the analysis

    Returns:
        A list of report lines
    """
    report_lines = ["\n=== Discovered BACnet Devices ==="]

    if not kb.all_devices and not kb.ip_to_instance:
        report_lines.append("  No BACnet devices found")
        return report_lines

    report_lines.append(f"  {kb.summary()}")
    for address in sorted(kb.all_devices | set(kb.ip_to_instance)):
        device = kb.identity(address) or DeviceIdentity()
        report_lines.append(f"\n  {address}:")
        if device.instance_id is not None:
            source = "I-Am" if device.announced else "observed"
            report_lines.append(f"    Instance: {device.instance_id} ({source})")
        else:
            report_lines.append("    Instance: unknown")

        properties = []
        if device.device_name is not None:
            properties.append(f"Name: {device.device_name}")
        if device.vendor_id is not None:
            properties.append(f"Vendor ID: {device.vendor_id}")
        if properties:
            report_lines.append(f"    Properties: {', '.join(properties)}")
    return report_lines


def generate_health_report(metrics: TcpHealthCounters) -> List[str]:
    """Generate the network health section."""
    report_lines = ["\n=== Network Health ==="]
    report_lines.append(f"  TCP Frames: {metrics.total_tcp_packets}")
    report_lines.append(f"  Retransmissions: {metrics.retransmissions}")
    report_lines.append(f"  Fast Retransmissions: {metrics.fast_retransmissions}")
    report_lines.append(f"  Duplicate ACKs: {metrics.duplicate_acks}")
    report_lines.append(f"  Resets: {metrics.resets}")
    report_lines.append(f"  Lost Segments: {metrics.lost_segments}")
    report_lines.append(f"  Out Of Order: {metrics.out_of_order}")
    report_lines.append(f"  Zero Window: {metrics.zero_window}")
    report_lines.append(f"  Keep Alive: {metrics.keep_alive}")
    report_lines.append(f"  ICMP Unreachable: {metrics.icmp_unreachable}")
    report_lines.append(
        f"  Loss Events: {metrics.loss_events_total} ({metrics.loss_percent:.2f}% of TCP frames)"
    )
    return report_lines


def generate_full_report(result) -> List[str]:
    """Generate a full report of an analysis result.

    Args:
        result: An AnalysisResult

    Returns:
        A list of report lines
    """
    report_lines = [f"Capture: {result.pcap_file}"]
    if result.deep_status != "completed":
        reason = f": {result.deep_error}" if result.deep_error else ""
        report_lines.append(f"Deep decode {result.deep_status}{reason}")
    else:
        report_lines.append(
            f"Deep decode: {result.deep_records} frames, {result.enriched_count} enriched"
        )

    report_lines.extend(generate_summary_report(result.statistics, result.fragment_count))
    report_lines.extend(generate_protocol_report(result.statistics))
    report_lines.extend(generate_talkers_report(result.statistics))
    report_lines.extend(generate_services_report(result.services, result.records))
    report_lines.extend(generate_devices_report(result.knowledge_base))
    report_lines.extend(generate_health_report(result.knowledge_base.tcp_metrics))

    if result.warnings:
        report_lines.append(f"\n=== Warnings ({len(result.warnings)}) ===")
        report_lines.extend(f"  {message}" for message in result.warnings)
    return report_lines


def generate_snapshot_report(snapshot: AnalysisSnapshot) -> List[str]:
    """Generate a report of a loaded snapshot.

    Service figures are computed from the saved packets, which may be
    limited to BACnet frames.
    """
    report_lines = [f"Snapshot version {snapshot.version}, created {snapshot.created_at.isoformat()}"]
    if snapshot.source_file:
        report_lines.append(f"Capture: {snapshot.source_file}")
    scope = "BACnet only" if snapshot.only_protocol_packets else "all frames"
    report_lines.append(f"Saved Packets: {len(snapshot.packets)} ({scope})")

    if snapshot.statistics is not None:
        report_lines.extend(generate_summary_report(snapshot.statistics))
        report_lines.extend(generate_protocol_report(snapshot.statistics))
        report_lines.extend(generate_talkers_report(snapshot.statistics))

    report_lines.extend(generate_services_report(service_breakdown(snapshot.packets), snapshot.packets))

    if snapshot.knowledge_base is not None:
        kb = DeviceKnowledgeBase.from_snapshot(snapshot.knowledge_base)
        report_lines.extend(generate_devices_report(kb))
        report_lines.extend(generate_health_report(kb.tcp_metrics))
    return report_lines


def print_report(report_lines: List[str]) -> None:
    """Print a report to the console.

    Args:
        report_lines: List of report lines
    """
    for line in report_lines:
        print(line)
