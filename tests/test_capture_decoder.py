"""
Tests for the generic decode pass.
"""

import threading

import pytest
from scapy.layers.inet import IP
from scapy.layers.l2 import Ether
from scapy.packet import Raw

from bacnet_inspector import capture_decoder
from bacnet_inspector.capture_decoder import (
    CaptureDecoder,
    decode_frame,
    detect_file_type,
    format_icmp_type,
    format_tcp_flags,
)
from bacnet_inspector.errors import CaptureOpenError, OperationCancelled, ResourceExhaustedError

from conftest import (
    arp_frame,
    fragment_frame,
    icmp_unreachable_frame,
    tcp_frame,
    udp_frame,
)


class TestDecodeFrame:
    """Header extraction of single frames."""

    def test_udp_bacnet_frame(self):
        record = decode_frame(Ether(bytes(udp_frame())), 1)
        assert record.number == 1
        assert record.protocol == "Udp"
        assert record.source_ip == "192.168.1.10"
        assert record.destination_ip == "192.168.1.255"
        assert record.source_port == 47808
        assert record.destination_port == 47808
        assert record.application_protocol == "BACnet"
        assert record.ethernet_type == "IPv4"
        assert record.source_mac == "00:11:22:33:44:55"
        assert not record.is_fragment
        assert record.raw_data is None

    def test_keep_raw_data(self):
        frame = Ether(bytes(udp_frame()))
        record = decode_frame(frame, 1, keep_raw_data=True)
        assert record.raw_data == bytes(frame)
        assert record.length == len(bytes(frame))

    def test_arp_short_circuits(self):
        record = decode_frame(Ether(bytes(arp_frame())), 3)
        assert record.protocol == "Arp"
        assert record.source_ip == "192.168.1.1"
        assert record.destination_ip == "192.168.1.2"
        assert record.details["ARP Operation"] == "Request"
        assert record.source_port == 0
        assert record.application_protocol is None

    def test_tcp_flags_and_payload_sniff(self):
        frame = tcp_frame(payload=b"GET /index.html HTTP/1.1\r\n")
        record = decode_frame(Ether(bytes(frame)), 4)
        assert record.protocol == "Tcp"
        assert record.application_protocol == "HTTP"
        assert record.details["TCP Flags"] == "PSH, ACK"

    def test_icmp_type_detail(self):
        record = decode_frame(Ether(bytes(icmp_unreachable_frame())), 5)
        assert record.protocol == "Icmp"
        assert record.details["ICMP Type"] == "dest-unreach (type=3, code=1)"

    def test_fragment_offset_marks_fragment(self):
        record = decode_frame(Ether(bytes(fragment_frame())), 6)
        assert record.is_fragment
        assert record.protocol == "Udp"

    def test_manual_udp_port_fallback(self):
        # Four bytes are too short for a UDP header, so only the ports can be read
        frame = Ether() / IP(src="10.0.0.1", dst="10.0.0.2", proto=17) / Raw(b"\xba\xc0\xba\xc1")
        record = decode_frame(Ether(bytes(frame)), 7)
        assert record.source_port == 47808
        assert record.destination_port == 47809
        assert record.application_protocol == "BACnet"


class TestFormatting:
    def test_tcp_flags(self):
        assert format_tcp_flags(0x02) == "SYN"
        assert format_tcp_flags(0x12) == "SYN, ACK"
        assert format_tcp_flags(0x04) == "RST"
        assert format_tcp_flags(0) == "NONE"

    def test_icmp_type(self):
        assert format_icmp_type(0, 0) == "echo-reply (type=0, code=0)"


class TestCaptureDecoder:
    """Reading whole capture files."""

    def test_reads_every_frame_in_order(self, mixed_pcap):
        records = list(CaptureDecoder(mixed_pcap))
        assert [r.number for r in records] == list(range(1, 9))
        assert records[0].timestamp == pytest.approx(1700000000.0)
        assert records[7].application_protocol is None

    def test_fragment_partition(self, mixed_pcap):
        records = list(CaptureDecoder(mixed_pcap))
        fragments = [r for r in records if r.is_fragment]
        assert len(fragments) == 1
        assert len(records) == len(fragments) + len([r for r in records if not r.is_fragment])

    def test_restartable(self, mixed_pcap):
        decoder = CaptureDecoder(mixed_pcap)
        first = [r.number for r in decoder]
        second = [r.number for r in decoder]
        assert first == second

    def test_count_frames(self, mixed_pcap):
        assert CaptureDecoder(mixed_pcap).count_frames() == 8

    def test_detect_file_type(self, mixed_pcap):
        assert detect_file_type(mixed_pcap) == "pcap"

    def test_missing_file(self, tmp_path):
        with pytest.raises(CaptureOpenError):
            CaptureDecoder(str(tmp_path / "missing.pcap")).records()

    def test_not_a_capture(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("this is not a capture file")
        with pytest.raises(CaptureOpenError):
            CaptureDecoder(str(path)).records()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.pcap"
        path.write_bytes(b"")
        with pytest.raises(CaptureOpenError):
            detect_file_type(str(path))

    def test_progress_reported_at_cadence_and_end(self, make_pcap, monkeypatch):
        monkeypatch.setattr(capture_decoder, "PROGRESS_EVERY_FRAMES", 4)
        path = make_pcap([udp_frame(sport=5000, dport=5001, payload=b"x") for _ in range(10)])
        calls = []
        list(CaptureDecoder(path, progress=lambda *args: calls.append(args)))

        assert [call[2] for call in calls] == [40, 80, 100]
        assert all(call[0] == capture_decoder.PHASE for call in calls)
        assert calls[-1][1] == "Read 10 of 10 frames (100%)"

    def test_cancellation(self, make_pcap, monkeypatch):
        monkeypatch.setattr(capture_decoder, "CANCEL_CHECK_EVERY_FRAMES", 2)
        path = make_pcap([udp_frame(sport=5000, dport=5001, payload=b"x") for _ in range(6)])
        cancel = threading.Event()
        seen = []

        with pytest.raises(OperationCancelled):
            for record in CaptureDecoder(path, cancel=cancel):
                seen.append(record.number)
                cancel.set()

        assert seen == [1]

    def test_undecodable_frame_is_skipped(self, mixed_pcap, monkeypatch):
        original = capture_decoder.decode_frame

        def flaky(packet, number, keep_raw_data=False):
            if number == 2:
                raise ValueError("broken frame")
            return original(packet, number, keep_raw_data)

        monkeypatch.setattr(capture_decoder, "decode_frame", flaky)
        decoder = CaptureDecoder(mixed_pcap)
        numbers = [r.number for r in decoder]

        assert 2 not in numbers
        assert len(numbers) == 7
        assert decoder.skipped_frames == 1

    def test_memory_exhaustion_is_fatal(self, mixed_pcap, monkeypatch):
        original = capture_decoder.decode_frame

        def exhausting(packet, number, keep_raw_data=False):
            if number == 3:
                raise MemoryError()
            return original(packet, number, keep_raw_data)

        monkeypatch.setattr(capture_decoder, "decode_frame", exhausting)
        decoder = CaptureDecoder(mixed_pcap)
        seen = []
        with pytest.raises(ResourceExhaustedError) as info:
            for record in decoder:
                seen.append(record.number)

        assert seen == [1, 2]
        assert info.value.records_completed == 2
        assert decoder.skipped_frames == 0
