"""
Application-layer protocol classification from ports and payload.
"""

from dataclasses import dataclass
from typing import Dict, Final, Optional, Tuple

from .constants import BACNET_PORT, BACNET_PORT_LAST, BACNET_PORT_RANGE_SIZE, BACNET_PROTOCOL


@dataclass(frozen=True)
class ProtocolInfo:
    """A supported protocol and the ports it is commonly seen on."""

    name: str
    abbreviation: str
    layer: int  # OSI layer: 2, 3, 4 or 7
    description: str
    common_ports: Tuple[int, ...] = ()


def _info(abbreviation: str, name: str, description: str, *ports: int) -> ProtocolInfo:
    return ProtocolInfo(name=name, abbreviation=abbreviation, layer=7, description=description, common_ports=ports)


# Registry order matters: the first protocol listing a port wins
PROTOCOLS: Final[Tuple[ProtocolInfo, ...]] = (
    ProtocolInfo("ARP", "ARP", 2, "Address Resolution Protocol"),
    ProtocolInfo("IPv4", "IPv4", 3, "Internet Protocol v4"),
    ProtocolInfo("IPv6", "IPv6", 3, "Internet Protocol v6"),
    ProtocolInfo("ICMP", "ICMP", 3, "Internet Control Message Protocol"),
    ProtocolInfo("IGMP", "IGMP", 3, "Internet Group Management Protocol"),
    ProtocolInfo("TCP", "TCP", 4, "Transmission Control Protocol"),
    ProtocolInfo("UDP", "UDP", 4, "User Datagram Protocol"),
    # Well-known ports
    _info("FTP-DATA", "FTP Data", "File Transfer Protocol (Data)", 20),
    _info("FTP", "FTP", "File Transfer Protocol (Control)", 21),
    _info("SSH", "SSH", "Secure Shell", 22),
    _info("TELNET", "Telnet", "Telnet Protocol", 23),
    _info("SMTP", "SMTP", "Simple Mail Transfer Protocol", 25, 587, 465),
    _info("DNS", "DNS", "Domain Name System", 53),
    _info("DHCP", "DHCP", "Dynamic Host Configuration Protocol", 67, 68),
    _info("TFTP", "TFTP", "Trivial File Transfer Protocol", 69),
    _info("HTTP", "HTTP", "Hypertext Transfer Protocol", 80, 8000, 8080, 8888),
    _info("KERBEROS", "Kerberos", "Kerberos Authentication", 88),
    _info("POP3", "POP3", "Post Office Protocol 3", 110, 995),
    _info("NTP", "NTP", "Network Time Protocol", 123),
    _info("NETBIOS-NS", "NetBIOS Name Service", "NetBIOS Name Service", 137),
    _info("NETBIOS-DGM", "NetBIOS Datagram", "NetBIOS Datagram Service", 138),
    _info("NETBIOS-SSN", "NetBIOS Session", "NetBIOS Session Service", 139),
    _info("IMAP", "IMAP", "Internet Message Access Protocol", 143, 993),
    _info("SNMP", "SNMP", "Simple Network Management Protocol", 161, 162),
    _info("BGP", "BGP", "Border Gateway Protocol", 179),
    _info("LDAP", "LDAP", "Lightweight Directory Access Protocol", 389, 636),
    _info("HTTPS", "HTTPS", "HTTP Secure", 443, 8443),
    _info("SMB", "SMB", "Server Message Block", 445),
    _info("SMTPS", "SMTPS", "SMTP over SSL", 465),
    _info("SYSLOG", "Syslog", "Syslog Protocol", 514),
    _info("RTSP", "RTSP", "Real Time Streaming Protocol", 554),
    _info("LDAPS", "LDAPS", "LDAP over SSL", 636),
    _info("IMAPS", "IMAPS", "IMAP over SSL", 993),
    _info("POP3S", "POP3S", "POP3 over SSL", 995),
    # Registered ports
    _info("SOCKS", "SOCKS", "SOCKS Proxy Protocol", 1080),
    _info("MSSQL", "MS SQL Server", "Microsoft SQL Server", 1433, 1434),
    _info("ORACLE", "Oracle DB", "Oracle Database", 1521, 1522),
    _info("NFS", "NFS", "Network File System", 2049),
    _info("MYSQL", "MySQL", "MySQL Database", 3306),
    _info("RDP", "RDP", "Remote Desktop Protocol", 3389),
    _info("RDPUDP", "RDP over UDP", "Remote Desktop Protocol UDP", 3389),
    _info("SIP", "SIP", "Session Initiation Protocol", 5060, 5061),
    _info("POSTGRESQL", "PostgreSQL", "PostgreSQL Database", 5432),
    _info("VNC", "VNC", "Virtual Network Computing", 5900, 5901, 5902, 5903),
    _info("X11", "X11", "X Window System", 6000, 6001, 6002, 6003),
    _info("REDIS", "Redis", "Redis Database", 6379),
    _info("CASSANDRA", "Cassandra", "Apache Cassandra", 9042, 9160),
    _info("ELASTICSEARCH", "Elasticsearch", "Elasticsearch", 9200, 9300),
    _info("MEMCACHED", "Memcached", "Memcached", 11211),
    _info("MONGODB", "MongoDB", "MongoDB Database", 27017, 27018, 27019),
    _info(
        BACNET_PROTOCOL,
        "BACnet",
        "Building Automation and Control Networks",
        *range(BACNET_PORT, BACNET_PORT + BACNET_PORT_RANGE_SIZE),
    ),
)

# First registry entry per port
PORT_TO_PROTOCOL: Final[Dict[int, str]] = {}
for _protocol in PROTOCOLS:
    if _protocol.layer != 7:
        continue
    for _port in _protocol.common_ports:
        PORT_TO_PROTOCOL.setdefault(_port, _protocol.abbreviation)

# ASCII prefixes of textual TCP protocols
PAYLOAD_SIGNATURES: Final[Tuple[Tuple[str, str], ...]] = (
    ("GET ", "HTTP"),
    ("POST ", "HTTP"),
    ("PUT ", "HTTP"),
    ("HEAD ", "HTTP"),
    ("HTTP/", "HTTP"),
)
SNIFF_LENGTH: Final[int] = 100


def _port_lookup(source_port: int, destination_port: int) -> Optional[str]:
    # Registry order decides between the two sides
    for protocol in PROTOCOLS:
        if protocol.layer != 7:
            continue
        if source_port in protocol.common_ports or destination_port in protocol.common_ports:
            return protocol.abbreviation
    return None


def detect_application_protocol(
    transport_protocol: Optional[str],
    source_port: int,
    destination_port: int,
    payload: Optional[bytes] = None,
) -> Optional[str]:
    """Derive an application-layer label for a frame.

    The well-known port registry is consulted first, then the BACnet/IP UDP
    port range, then an ASCII prefix sniff of the TCP payload. The first
    match wins.

    Args:
        transport_protocol: Transport label such as "Udp" or "TCP" (case-insensitive)
        source_port: Source port, 0 if absent
        destination_port: Destination port, 0 if absent
        payload: Transport payload, used for the TCP prefix sniff

    Returns:
        The application label, or None if nothing matched
    """
    if source_port in PORT_TO_PROTOCOL or destination_port in PORT_TO_PROTOCOL:
        label = _port_lookup(source_port, destination_port)
        if label:
            return label

    transport = (transport_protocol or "").upper()

    if transport == "UDP" and (
        BACNET_PORT <= source_port <= BACNET_PORT_LAST
        or BACNET_PORT <= destination_port <= BACNET_PORT_LAST
    ):
        return BACNET_PROTOCOL

    if payload and len(payload) > 4 and transport == "TCP":
        text = payload[:SNIFF_LENGTH].decode("ascii", errors="replace")
        for prefix, label in PAYLOAD_SIGNATURES:
            if text.startswith(prefix):
                return label

    return None
