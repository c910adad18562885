"""
Tests for identity learning, health counters and knowledge base merging.
"""

import pytest

from bacnet_inspector.knowledge_base import (
    DeviceKnowledgeBase,
    HealthCategory,
    classify_health_entry,
    extract_identity,
    merge_knowledge,
)
from bacnet_inspector.models import DeviceIdentity

from conftest import bacnet_record, make_record

ANNOUNCE = {"BACnet Unconfirmed Service": "i-Am(0)"}


def announcement(number, instance, source_ip="192.168.1.10"):
    return bacnet_record(number, source_ip, {"bacapp.instance_number": instance, **ANNOUNCE})


def observation(number, instance, source_ip="192.168.1.10"):
    return bacnet_record(number, source_ip, {"bacapp.instance_number": instance})


class TestIdentityPrecedence:
    def test_announcement_beats_later_observation(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(announcement(1, "7"))
        kb.process_packet(observation(2, "9"))
        assert kb.instance_for("192.168.1.10") == "7"

    def test_announcement_beats_earlier_observation(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(observation(1, "9"))
        kb.process_packet(announcement(2, "7"))
        assert kb.instance_for("192.168.1.10") == "7"

    def test_later_announcement_overwrites(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(announcement(1, "7"))
        kb.process_packet(announcement(2, "8"))
        assert kb.instance_for("192.168.1.10") == "8"

    def test_observation_is_first_writer_wins(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(observation(1, "9"))
        kb.process_packet(observation(2, "10"))
        assert kb.instance_for("192.168.1.10") == "9"

    def test_three_frames_then_new_announcement(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(observation(1, "1001"))
        kb.process_packet(announcement(2, "1001"))
        kb.process_packet(observation(3, "1001"))
        assert kb.instance_for("192.168.1.10") == "1001"

        kb.process_packet(announcement(4, "2002"))
        assert kb.instance_for("192.168.1.10") == "2002"
        assert "192.168.1.10" in kb.announced

    def test_name_and_vendor_first_writer_wins(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(bacnet_record(1, details={"Object Name": "AHU-1", "Vendor ID": "15", **ANNOUNCE}))
        kb.process_packet(bacnet_record(2, details={"Object Name": "AHU-2", "Vendor ID": "99", **ANNOUNCE}))
        assert kb.ip_to_device_name["192.168.1.10"] == "AHU-1"
        assert kb.ip_to_vendor_id["192.168.1.10"] == "15"

    def test_non_bacnet_records_ignored(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(make_record(1, {"Instance Number": "5"}, source_ip="10.0.0.1", protocol="Tcp"))
        assert kb.all_devices == set()
        assert kb.ip_to_instance == {}

    def test_port_range_alone_qualifies(self):
        kb = DeviceKnowledgeBase()
        record = make_record(1, {"Instance Number": "5"}, source_ip="10.0.0.1", source_port=47811)
        kb.process_packet(record)
        assert kb.instance_for("10.0.0.1") == "5"

    def test_all_devices_counts_records_without_details(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(bacnet_record(1, source_ip="192.168.1.30"))
        kb.process_packet(bacnet_record(2, source_ip=None))
        assert kb.all_devices == {"192.168.1.30"}

    def test_reset(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(announcement(1, "7"))
        kb.reset()
        assert kb.ip_to_instance == {}
        assert kb.tcp_metrics.total_tcp_packets == 0

    def test_identity_view(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(announcement(1, "7"))
        kb.process_packet(bacnet_record(2, details={"Object Name": "AHU-1", "Vendor ID": "15"}))
        kb.process_packet(bacnet_record(3, source_ip="192.168.1.30"))

        assert kb.identity("192.168.1.10") == DeviceIdentity(
            instance_id="7", device_name="AHU-1", vendor_id="15", announced=True
        )
        assert kb.identity("192.168.1.30") == DeviceIdentity()
        assert kb.identity("10.9.9.9") is None
        assert kb.identity(" ") is None


class TestExtractIdentity:
    def test_explicit_instance_preferred_over_pattern(self):
        found = extract_identity({"Object Identifier": "device,55", "Instance Number": "12"})
        assert found.instance == "12"

    def test_device_pattern(self):
        found = extract_identity({"Summary": "I-Am device,4001"})
        assert found.instance == "4001"
        assert found.announced

    def test_object_instance_fallback(self):
        assert extract_identity({"bacapp.device_instance": "inst 77"}).instance == "77"

    def test_digits_only(self):
        assert extract_identity({"Instance Number": "abc"}).instance is None

    def test_short_name_rejected(self):
        assert extract_identity({"Object Name": "A"}).device_name is None

    def test_announcement_marker_case_insensitive(self):
        assert extract_identity({"Info": "IAM broadcast"}).announced
        assert not extract_identity({"Info": "who-Is"}).announced

    def test_key_can_be_name_and_vendor(self):
        found = extract_identity({"vendor_name": "Acme Controls"})
        assert found.device_name == "Acme Controls"
        assert found.vendor_id == "Acme Controls"


class TestHealthClassification:
    @pytest.mark.parametrize(
        "key, value, expected",
        [
            ("Expert Info", "This frame is a (suspected) retransmission", HealthCategory.RETRANSMISSION),
            ("Expert Info", "fast retransmission", HealthCategory.RETRANSMISSION),
            ("tcp.analysis.duplicate_ack", "1", HealthCategory.DUPLICATE_ACK),
            ("TCP Flags", "RST, ACK", HealthCategory.RESET),
            ("Info", "Connection reset", HealthCategory.RESET),
            ("tcp.analysis.lost_segment", "1", HealthCategory.LOST_SEGMENT),
            ("Info", "TCP Out of order", HealthCategory.OUT_OF_ORDER),
            ("tcp.analysis.zero_window", "1", HealthCategory.ZERO_WINDOW),
            ("Window Size", "0", HealthCategory.ZERO_WINDOW),
            ("tcp.analysis.keep_alive", "1", HealthCategory.KEEP_ALIVE),
            ("Sequence", "12345", None),
        ],
    )
    def test_precedence(self, key, value, expected):
        assert classify_health_entry(key, value) == expected

    def test_counters_per_pair(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(
            make_record(
                1,
                {"TCP Flags": "RST", "Info": "duplicate ack", "Note": "keep alive"},
                protocol="Tcp",
            )
        )
        metrics = kb.tcp_metrics
        assert metrics.total_tcp_packets == 1
        assert metrics.resets == 1
        assert metrics.duplicate_acks == 1
        assert metrics.keep_alive == 1
        assert metrics.loss_events_total == 3
        assert metrics.loss_percent == pytest.approx(300.0)

    def test_icmp_unreachable(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(make_record(1, {"ICMP Type": "dest-unreach (type=3, code=1)"}, protocol="Icmp"))
        kb.process_packet(make_record(2, {"ICMP Type": "echo-reply (type=0, code=0)"}, protocol="Icmp"))
        assert kb.tcp_metrics.icmp_unreachable == 1
        assert kb.tcp_metrics.total_tcp_packets == 0

    def test_loss_total_is_sum_of_categories(self):
        kb = DeviceKnowledgeBase()
        for number in range(1, 20):
            kb.process_packet(
                make_record(number, {"Info": "retransmission" if number % 2 else "zero window"}, protocol="TCP")
            )
        metrics = kb.tcp_metrics
        categories = {name: value for name, value in metrics.to_dict().items() if name != "total_tcp_packets"}
        assert all(value >= 0 for value in categories.values())
        assert metrics.loss_events_total == sum(categories.values())
        assert metrics.total_tcp_packets == 19


class TestCovCombinations:
    def test_confirmed_notification_counted(self):
        kb = DeviceKnowledgeBase()
        details = {
            "BACnet Confirmed Service": "confirmedCOVNotification(1)",
            "Object Type": "8",
            "All Object Types": "8,2",
            "Instance Number": "40211",
            "All Instances": "40211,19",
        }
        kb.process_packet(bacnet_record(1, details=details))
        kb.process_packet(bacnet_record(2, details=details))
        assert kb.cov_combination_counts == {"40211-8,40211": 2, "40211-2,19": 2}
        assert kb.top_cov_combinations() == [("40211-2,19", 2)]


class TestMergeKnowledge:
    def test_merge_rules(self):
        primary = DeviceKnowledgeBase()
        primary.process_packet(observation(1, "9", "10.0.0.1"))
        primary.process_packet(observation(2, "3", "10.0.0.2"))
        primary.process_packet(bacnet_record(3, "10.0.0.1", {"Object Name": "first"}))
        primary.process_packet(make_record(4, protocol="Tcp"))

        enriched = DeviceKnowledgeBase()
        enriched.process_packet(announcement(1, "7", "10.0.0.1"))
        enriched.process_packet(observation(2, "4", "10.0.0.2"))
        enriched.process_packet(observation(5, "11", "10.0.0.3"))
        enriched.process_packet(bacnet_record(3, "10.0.0.1", {"Object Name": "second"}))

        merged = merge_knowledge(primary, enriched)
        assert merged.ip_to_instance == {"10.0.0.1": "7", "10.0.0.2": "3", "10.0.0.3": "11"}
        assert merged.ip_to_device_name["10.0.0.1"] == "first"
        assert merged.all_devices == {"10.0.0.1", "10.0.0.2", "10.0.0.3"}
        assert merged.tcp_metrics.total_tcp_packets == 1

    def test_inputs_unchanged(self):
        primary = DeviceKnowledgeBase()
        enriched = DeviceKnowledgeBase()
        enriched.process_packet(announcement(1, "7"))
        merge_knowledge(primary, enriched)
        assert primary.ip_to_instance == {}

    def test_snapshot_round_trip(self):
        kb = DeviceKnowledgeBase()
        kb.process_packet(announcement(1, "7"))
        restored = DeviceKnowledgeBase.from_snapshot(kb.to_snapshot())
        assert restored.ip_to_instance == kb.ip_to_instance
        assert restored.announced == kb.announced
        assert restored.summary() == kb.summary()
