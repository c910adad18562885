"""
End-to-end tests of the two-phase analysis pipeline.
"""

import threading

import pytest

from bacnet_inspector import capture_decoder
from bacnet_inspector.analyzer import (
    DEEP_COMPLETED,
    DEEP_FAILED,
    DEEP_SKIPPED,
    DEEP_UNAVAILABLE,
    AnalysisOptions,
    BACnetAnalyzer,
)
from bacnet_inspector.errors import CaptureOpenError, OperationCancelled, ResourceExhaustedError
from bacnet_inspector.knowledge_base import DeviceKnowledgeBase

from conftest import tshark_line

ENRICHED_FIRST_FRAME = tshark_line(
    frame_number="1",
    frame_time_epoch="1700000000.0",
    frame_len="60",
    ip_src="192.168.1.10",
    ip_dst="192.168.1.255",
    ip_proto="17",
    udp_srcport="47808",
    udp_dstport="47808",
    bacapp_type="1",
    bacapp_unconfirmed_service="0",
    bacapp_objectType="8",
    bacapp_instance_number="1234",
    bacapp_vendor_identifier="15",
)


class TestBACnetAnalyzer:
    def test_generic_only(self, mixed_pcap):
        result = BACnetAnalyzer(AnalysisOptions(deep_decode=False)).analyze_pcap(mixed_pcap)
        assert result.deep_status == DEEP_SKIPPED
        assert len(result.records) == 8
        assert result.fragment_count == 1
        assert result.statistics.total_packets == len(result.records) - result.fragment_count
        assert result.knowledge_base.tcp_metrics.total_tcp_packets == 2
        assert result.knowledge_base.tcp_metrics.icmp_unreachable == 1
        assert "192.168.1.10" in result.knowledge_base.all_devices

    def test_deep_enrichment_merged(self, mixed_pcap, fake_tshark):
        options = AnalysisOptions(tshark_path=fake_tshark([ENRICHED_FIRST_FRAME]))
        result = BACnetAnalyzer(options).analyze_pcap(mixed_pcap)

        assert result.deep_status == DEEP_COMPLETED
        assert result.deep_records == 1
        assert result.enriched_count == 1
        first = result.records[0]
        assert first.application_protocol == "BACnet"
        assert first.details["Instance Number"] == "1234"
        assert first.protocol == "Udp"
        assert result.knowledge_base.instance_for("192.168.1.10") == "1234"
        assert result.knowledge_base.ip_to_vendor_id["192.168.1.10"] == "15"
        assert result.services.counts["i-Am"] >= 1

    def test_missing_tool_keeps_generic_result(self, mixed_pcap, tmp_path):
        options = AnalysisOptions(tshark_path=str(tmp_path / "no-tshark"))
        result = BACnetAnalyzer(options).analyze_pcap(mixed_pcap)
        assert result.deep_status == DEEP_UNAVAILABLE
        assert result.statistics.total_packets == 7
        assert any("Deep decode skipped" in message for message in result.warnings)

    def test_failing_tool_keeps_generic_result(self, mixed_pcap, fake_tshark):
        options = AnalysisOptions(tshark_path=fake_tshark([], exit_code=1, stderr="boom"))
        result = BACnetAnalyzer(options).analyze_pcap(mixed_pcap)
        assert result.deep_status == DEEP_FAILED
        assert "boom" in result.deep_error
        assert len(result.records) == 8

    def test_missing_capture(self, tmp_path):
        analyzer = BACnetAnalyzer(AnalysisOptions(deep_decode=False))
        with pytest.raises(CaptureOpenError):
            analyzer.analyze_pcap(str(tmp_path / "missing.pcap"))

    def test_cancelled(self, mixed_pcap):
        cancel = threading.Event()
        cancel.set()
        analyzer = BACnetAnalyzer(AnalysisOptions(deep_decode=False, cancel=cancel))
        with pytest.raises(OperationCancelled):
            analyzer.analyze_pcap(mixed_pcap)

    def test_progress_phases(self, mixed_pcap):
        phases = []
        options = AnalysisOptions(deep_decode=False, progress=lambda phase, text, pct: phases.append(phase))
        BACnetAnalyzer(options).analyze_pcap(mixed_pcap)
        assert "Reading capture" in phases
        assert phases[-1] == "Analysis"

    def test_to_snapshot(self, mixed_pcap):
        result = BACnetAnalyzer(AnalysisOptions(deep_decode=False)).analyze_pcap(mixed_pcap)
        snapshot = result.to_snapshot()
        assert snapshot.source_file == mixed_pcap
        assert snapshot.statistics is result.statistics
        assert snapshot.knowledge_base.all_devices == frozenset(result.knowledge_base.all_devices)


class TestResourceExhaustion:
    def test_generic_decode_out_of_memory(self, mixed_pcap, monkeypatch):
        original = capture_decoder.decode_frame

        def exhausting(packet, number, keep_raw_data=False):
            if number == 3:
                raise MemoryError()
            return original(packet, number, keep_raw_data)

        monkeypatch.setattr(capture_decoder, "decode_frame", exhausting)
        analyzer = BACnetAnalyzer(AnalysisOptions(deep_decode=False))
        with pytest.raises(ResourceExhaustedError) as info:
            analyzer.analyze_pcap(mixed_pcap)
        assert info.value.records_completed == 2

    def test_accumulation_out_of_memory(self, mixed_pcap, monkeypatch):
        original = DeviceKnowledgeBase.process_packet

        def exhausting(self, record):
            if record.number == 4:
                raise MemoryError()
            return original(self, record)

        monkeypatch.setattr(DeviceKnowledgeBase, "process_packet", exhausting)
        analyzer = BACnetAnalyzer(AnalysisOptions(deep_decode=False))
        with pytest.raises(ResourceExhaustedError) as info:
            analyzer.analyze_pcap(mixed_pcap)
        assert info.value.records_completed == 3

    def test_deep_pass_out_of_memory_is_fatal(self, mixed_pcap, fake_tshark, monkeypatch):
        original = DeviceKnowledgeBase.process_packet

        def exhausting(self, record):
            if record.application_protocol == "BACnet" and record.protocol == "UDP":
                raise MemoryError()
            return original(self, record)

        monkeypatch.setattr(DeviceKnowledgeBase, "process_packet", exhausting)
        options = AnalysisOptions(tshark_path=fake_tshark([ENRICHED_FIRST_FRAME]))
        with pytest.raises(ResourceExhaustedError) as info:
            BACnetAnalyzer(options).analyze_pcap(mixed_pcap)
        assert info.value.records_completed == 0
