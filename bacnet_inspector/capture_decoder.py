"""
Generic decode pass: read a capture file frame by frame into PacketRecords.
"""

import logging
import os
import struct
from typing import Any, Dict, Iterator, Optional

from scapy.error import Scapy_Exception
from scapy.layers.inet import ICMP, IP, TCP, UDP, icmptypes
from scapy.layers.inet6 import IPv6
from scapy.layers.l2 import ARP, Ether
from scapy.utils import PcapNgReader, PcapReader, RawPcapNgReader, RawPcapReader

from .classifier import detect_application_protocol
from .constants import CANCEL_CHECK_EVERY_FRAMES, PROGRESS_EVERY_FRAMES
from .errors import CaptureOpenError, ResourceExhaustedError
from .models import PacketRecord, in_bacnet_port_range
from .packet_processors import bacnet_details, decode_bacnet_frame
from .progress import ProgressCallback, check_cancelled, emit_progress, percent_of

logger = logging.getLogger(__name__)

PHASE = "Reading capture"

PCAPNG_MAGIC = 0x0A0D0D0A
PCAP_MAGIC = {
    0xA1B2C3D4: ">",
    0xD4C3B2A1: "<",
    0xA1B23C4D: ">",
    0x4D3CB2A1: "<",
}

# Transport names as the generic pass reports them
TRANSPORT_NAMES: Dict[int, str] = {
    1: "Icmp",
    2: "Igmp",
    6: "Tcp",
    17: "Udp",
    58: "IcmpV6",
}

ETHERNET_TYPE_NAMES: Dict[int, str] = {
    0x0800: "IPv4",
    0x0806: "Arp",
    0x86DD: "IPv6",
    0x8100: "VLanTaggedFrame",
}

ARP_OPERATIONS: Dict[int, str] = {1: "Request", 2: "Response"}

_TCP_FLAG_BITS = (
    (0x01, "FIN"),
    (0x02, "SYN"),
    (0x04, "RST"),
    (0x08, "PSH"),
    (0x10, "ACK"),
    (0x20, "URG"),
)


def detect_file_type(path: str) -> str:
    """Identify the capture container from its magic number.

    Args:
        path: Path to the capture file

    Returns:
        "pcap" or "pcapng"

    Raises:
        CaptureOpenError: If the file cannot be read or is not a capture file
    """
    try:
        with open(path, "rb") as handle:
            header = handle.read(4)
    except OSError as err:
        raise CaptureOpenError(f"Cannot open capture file {path}: {err}") from err

    if len(header) < 4:
        raise CaptureOpenError(f"Not a capture file: {path}")

    magic = struct.unpack("<I", header)[0]
    if magic == PCAPNG_MAGIC:
        return "pcapng"
    if magic in PCAP_MAGIC or struct.unpack(">I", header)[0] in PCAP_MAGIC:
        return "pcap"
    raise CaptureOpenError(f"Not a capture file: {path}")


def format_tcp_flags(flags: int) -> str:
    names = [name for bit, name in _TCP_FLAG_BITS if flags & bit]
    return ", ".join(names) if names else "NONE"


def format_icmp_type(icmp_type: int, icmp_code: int) -> str:
    """Render an ICMP type as ``"dest-unreach (type=3, code=1)"``."""
    name = icmptypes.get(icmp_type, "unknown")
    return f"{name} (type={icmp_type}, code={icmp_code})"


def _open_reader(path: str, file_type: str, raw: bool = False) -> Any:
    if file_type == "pcapng":
        reader_class = RawPcapNgReader if raw else PcapNgReader
    else:
        reader_class = RawPcapReader if raw else PcapReader
    try:
        return reader_class(path)
    except (OSError, Scapy_Exception) as err:
        raise CaptureOpenError(f"Cannot open capture file {path}: {err}") from err


def decode_frame(packet: Any, number: int, keep_raw_data: bool = False) -> PacketRecord:
    """Extract a normalized record from one dissected frame.

    Extraction runs Ethernet, then ARP (which ends the extraction), then
    IPv4/IPv6, then TCP/UDP and ICMP. The application label is assigned last.

    Args:
        packet: A scapy packet as produced by PcapReader/PcapNgReader
        number: 1-based frame number within the capture
        keep_raw_data: Whether to keep the frame bytes on the record

    Returns:
        The decoded record
    """
    raw = bytes(getattr(packet, "original", None) or bytes(packet))
    record = PacketRecord(
        number=number,
        timestamp=float(getattr(packet, "time", 0.0) or 0.0),
        length=len(raw),
        raw_data=raw if keep_raw_data else None,
    )

    if packet.haslayer(Ether):
        ether = packet[Ether]
        record.source_mac = ether.src
        record.destination_mac = ether.dst
        record.ethernet_type = ETHERNET_TYPE_NAMES.get(ether.type, f"0x{ether.type:04x}")

    if packet.haslayer(ARP):
        arp = packet[ARP]
        record.protocol = "Arp"
        record.source_ip = arp.psrc or ""
        record.destination_ip = arp.pdst or ""
        record.details["ARP Operation"] = ARP_OPERATIONS.get(arp.op, str(arp.op))
        record.details["Sender MAC"] = arp.hwsrc
        record.details["Target MAC"] = arp.hwdst
        return record

    ip_payload: Optional[bytes] = None
    if packet.haslayer(IP):
        ip = packet[IP]
        record.source_ip = ip.src
        record.destination_ip = ip.dst
        record.protocol = TRANSPORT_NAMES.get(ip.proto, str(ip.proto))
        record.ttl = ip.ttl
        record.is_fragment = ip.frag > 0
        ip_payload = bytes(ip.payload)
    elif packet.haslayer(IPv6):
        ipv6 = packet[IPv6]
        record.source_ip = ipv6.src
        record.destination_ip = ipv6.dst
        record.protocol = TRANSPORT_NAMES.get(ipv6.nh, str(ipv6.nh))
        record.ttl = ipv6.hlim

    payload: Optional[bytes] = None
    if packet.haslayer(TCP):
        tcp = packet[TCP]
        record.source_port = tcp.sport
        record.destination_port = tcp.dport
        record.details["TCP Flags"] = format_tcp_flags(int(tcp.flags))
        record.details["Sequence"] = str(tcp.seq)
        record.details["Acknowledgment"] = str(tcp.ack)
        payload = bytes(tcp.payload)
    elif packet.haslayer(UDP):
        udp = packet[UDP]
        record.source_port = udp.sport
        record.destination_port = udp.dport
    elif record.protocol == "Udp" and ip_payload and len(ip_payload) >= 4:
        # The UDP header did not dissect; read the two ports directly
        record.source_port, record.destination_port = struct.unpack("!HH", ip_payload[:4])

    if packet.haslayer(ICMP):
        icmp = packet[ICMP]
        record.details["ICMP Type"] = format_icmp_type(icmp.type, icmp.code)

    record.application_protocol = detect_application_protocol(
        record.protocol, record.source_port, record.destination_port, payload
    )

    if (
        record.protocol == "Udp"
        and not record.is_fragment
        and (in_bacnet_port_range(record.source_port) or in_bacnet_port_range(record.destination_port))
    ):
        record.details.update(bacnet_details(decode_bacnet_frame(raw, number)))

    return record


class CaptureDecoder:
    """Lazy, restartable reader of PacketRecords from a pcap/pcapng file."""

    def __init__(
        self,
        pcap_file: str,
        progress: Optional[ProgressCallback] = None,
        cancel: Any = None,
        keep_raw_data: bool = False,
    ):
        """Initialize the decoder.

        Args:
            pcap_file: Path to the capture file
            progress: Optional progress callback
            cancel: Optional cancellation token with an ``is_set()`` method
            keep_raw_data: Whether records keep their frame bytes
        """
        self.pcap_file = str(pcap_file)
        self.progress = progress
        self.cancel = cancel
        self.keep_raw_data = keep_raw_data
        self.skipped_frames = 0

    def count_frames(self) -> int:
        """Count the frames of the capture without dissecting them."""
        file_type = detect_file_type(self.pcap_file)
        reader = _open_reader(self.pcap_file, file_type, raw=True)
        count = 0
        try:
            for _ in reader:
                count += 1
        finally:
            reader.close()
        return count

    def records(self) -> Iterator[PacketRecord]:
        """Open the capture and return an iterator over its records.

        The file is opened and pre-counted before this returns, so open
        errors surface here rather than on the first ``next()``.

        Raises:
            CaptureOpenError: If the file is missing or not a capture file
        """
        if not os.path.isfile(self.pcap_file):
            raise CaptureOpenError(f"Capture file not found: {self.pcap_file}")

        file_type = detect_file_type(self.pcap_file)
        total = self.count_frames()
        reader = _open_reader(self.pcap_file, file_type)
        logger.info("Reading %s (%s, %d frames)", self.pcap_file, file_type, total)
        return self._iterate(reader, total)

    def __iter__(self) -> Iterator[PacketRecord]:
        return self.records()

    def _iterate(self, reader: Any, total: int) -> Iterator[PacketRecord]:
        self.skipped_frames = 0
        number = 0
        try:
            for packet in reader:
                number += 1
                if number % CANCEL_CHECK_EVERY_FRAMES == 0:
                    check_cancelled(self.cancel, PHASE)

                try:
                    record = decode_frame(packet, number, self.keep_raw_data)
                except MemoryError:
                    raise
                except Exception as err:
                    self.skipped_frames += 1
                    logger.warning("Skipping frame %d: %s", number, err)
                    continue

                yield record

                if number % PROGRESS_EVERY_FRAMES == 0 or number == total:
                    emit_progress(
                        self.progress,
                        PHASE,
                        f"Read {number} of {total} frames ({percent_of(number, total)}%)",
                        percent_of(number, total),
                    )
        except MemoryError as err:
            raise ResourceExhaustedError(
                f"Out of memory while reading frame {number}",
                records_completed=max(0, number - 1 - self.skipped_frames),
            ) from err
        finally:
            reader.close()

        logger.info("Finished: %d frames read, %d skipped", number, self.skipped_frames)
