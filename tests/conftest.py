"""
Shared fixtures: synthetic captures written with scapy and fake tshark scripts.
"""

import stat
from typing import Dict, List, Optional

import pytest
from scapy.layers.inet import ICMP, IP, TCP, UDP
from scapy.layers.l2 import ARP, Ether
from scapy.packet import Raw
from scapy.utils import wrpcap

from bacnet_inspector.constants import TSHARK_FIELDS
from bacnet_inspector.models import PacketRecord

BASE_TIME = 1700000000.0

# BVLC Original-Broadcast-NPDU carrying a Who-Is
WHO_IS_PAYLOAD = bytes.fromhex("810b000c0120ffff00ff1008")


def udp_frame(src="192.168.1.10", dst="192.168.1.255", sport=47808, dport=47808, payload=WHO_IS_PAYLOAD):
    return Ether(src="00:11:22:33:44:55", dst="ff:ff:ff:ff:ff:ff") / IP(src=src, dst=dst) / UDP(
        sport=sport, dport=dport
    ) / Raw(payload)


def tcp_frame(src="10.0.0.1", dst="10.0.0.2", sport=51000, dport=51001, flags="PA", payload=b""):
    frame = Ether() / IP(src=src, dst=dst) / TCP(sport=sport, dport=dport, flags=flags)
    return frame / Raw(payload) if payload else frame


def fragment_frame(src="10.0.0.5", dst="10.0.0.6"):
    return Ether() / IP(src=src, dst=dst, proto=17, frag=185) / Raw(b"\x00" * 32)


def arp_frame():
    return Ether(src="00:11:22:33:44:55", dst="ff:ff:ff:ff:ff:ff") / ARP(
        op=1, psrc="192.168.1.1", pdst="192.168.1.2", hwsrc="00:11:22:33:44:55"
    )


def icmp_unreachable_frame(src="10.0.0.9", dst="10.0.0.1"):
    return Ether() / IP(src=src, dst=dst) / ICMP(type=3, code=1)


@pytest.fixture
def make_pcap(tmp_path):
    """Factory writing frames to a pcap file, one second apart."""

    def _make(frames, name="capture.pcap", start=BASE_TIME, step=1.0):
        for index, frame in enumerate(frames):
            frame.time = start + index * step
        path = tmp_path / name
        wrpcap(str(path), frames)
        return str(path)

    return _make


@pytest.fixture
def mixed_pcap(make_pcap):
    """A small capture: BACnet, TCP, HTTP, ARP, ICMP and a fragment."""
    frames = [
        udp_frame(),
        udp_frame(src="192.168.1.20", dst="192.168.1.10"),
        tcp_frame(),
        tcp_frame(payload=b"GET / HTTP/1.1\r\nHost: x\r\n\r\n"),
        arp_frame(),
        icmp_unreachable_frame(),
        fragment_frame(),
        udp_frame(src="10.1.1.1", dst="10.1.1.2", sport=5000, dport=5001, payload=b"hello"),
    ]
    return make_pcap(frames)


def tshark_line(**fields: str) -> str:
    """One tab-separated tshark output line; keyword names use ``_`` for ``.``."""
    values = {name.replace(".", "_"): "" for name in TSHARK_FIELDS}
    values.update(fields)
    return "\t".join(values[name.replace(".", "_")] for name in TSHARK_FIELDS)


@pytest.fixture
def fake_tshark(tmp_path):
    """Factory writing an executable script that mimics tshark.

    The script ignores its arguments, prints the given lines, writes
    ``stderr`` to standard error and exits with ``exit_code``.
    """

    def _make(lines: List[str], exit_code: int = 0, stderr: str = "", sleep: Optional[float] = None):
        output = tmp_path / "tshark-output.txt"
        output.write_text("".join(line + "\n" for line in lines))
        script = tmp_path / "tshark"
        body = ["#!/bin/sh"]
        if sleep:
            body.append(f"sleep {sleep}")
        body.append(f'cat "{output}"')
        if stderr:
            body.append(f'echo "{stderr}" >&2')
        body.append(f"exit {exit_code}")
        script.write_text("\n".join(body) + "\n")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)

    return _make


@pytest.fixture
def dummy_capture(tmp_path):
    """A file that exists, for decoders that do not read it themselves."""
    path = tmp_path / "dummy.pcap"
    path.write_bytes(b"\xd4\xc3\xb2\xa1")
    return str(path)


def make_record(number: int = 1, details: Optional[Dict[str, str]] = None, **kwargs) -> PacketRecord:
    kwargs.setdefault("timestamp", BASE_TIME + number)
    kwargs.setdefault("length", 60)
    return PacketRecord(number=number, details=dict(details or {}), **kwargs)


def bacnet_record(number=1, source_ip="192.168.1.10", details=None, **kwargs):
    kwargs.setdefault("protocol", "Udp")
    kwargs.setdefault("destination_ip", "192.168.1.255")
    kwargs.setdefault("source_port", 47808)
    kwargs.setdefault("destination_port", 47808)
    kwargs.setdefault("application_protocol", "BACnet")
    return make_record(number, details, source_ip=source_ip, **kwargs)


