"""
Functions for extracting BACnet fields from frames decoded by bacpypes3.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from bacpypes3.analysis import decode_packet, settings
from bacpypes3.apdu import apdu_types

from .constants import ServiceChoice, ServiceChoiceMapping

logger = logging.getLogger(__name__)

# Enable route awareness in BACpypes3
settings.route_aware = True

CONFIRMED_REQUEST_TYPE = 0
UNCONFIRMED_REQUEST_TYPE = 1


def decode_bacnet_frame(data: bytes, frame_number: int = 0) -> Optional[Any]:
    """Decode a raw link-layer frame with bacpypes3.

    Args:
        data: The complete frame bytes, starting at the Ethernet header
        frame_number: Frame number, used for logging only

    Returns:
        The decoded frame, or None if bacpypes3 could not decode it
    """
    try:
        return decode_packet(data)
    except MemoryError:
        raise
    except Exception as err:
        # Not every frame on a BACnet port is a decodable BACnet PDU
        logger.debug("Frame %d: BACnet decode skipped (%s)", frame_number, err)
        return None


def extract_service_choice(apdu: Any) -> Optional[int]:
    """Extract the service choice from an APDU, or None if not found."""
    service = getattr(apdu, "apduService", None)
    if service is None:
        return None
    try:
        return int(service)
    except (TypeError, ValueError):
        return None


def extract_apdu_type_code(apdu: Any) -> Optional[int]:
    """Extract the numeric APDU type (0 = confirmed request, 1 = unconfirmed, ...)."""
    code = getattr(apdu, "apduType", None)
    if code is None and hasattr(apdu, "apci"):
        code = getattr(apdu.apci, "apduType", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def extract_apdu_type(apdu: Any) -> str:
    """Extract the APDU type as a string.

    Args:
        apdu: The APDU to extract the type from

    Returns:
        The APDU type as a string
    """
    apdu_type_code = extract_apdu_type_code(apdu)
    if apdu_type_code is not None and apdu_type_code in apdu_types:
        return apdu_types[apdu_type_code].__name__

    # Fall back to the class name if the type code is not available
    return type(apdu).__name__


def extract_network_and_mac(npdu: Any) -> Tuple[Optional[int], Optional[str]]:
    """Extract the network number and MAC address from an NPDU.

    Args:
        npdu: The NPDU to extract information from

    Returns:
        A tuple of (network, mac) where network is an integer or None,
        and mac is a hex string or None
    """
    network = None
    mac = None

    sadr = getattr(npdu, "npduSADR", None) if npdu else None
    if sadr:
        network = getattr(sadr, "addrNet", None)
        mac_bytes = getattr(sadr, "addrAddr", None)
        mac = "".join(f"{b:02x}" for b in mac_bytes) if mac_bytes else None

    return network, mac


def extract_device_id(apdu: Any) -> Optional[int]:
    """Extract the device instance from an I-Am request APDU.

    Args:
        apdu: The APDU to extract the device ID from

    Returns:
        The device instance as an integer, or None if not found
    """
    if not hasattr(apdu, "iAmDeviceIdentifier"):
        return None

    device_id_info = apdu.iAmDeviceIdentifier
    try:
        if isinstance(device_id_info, tuple) and len(device_id_info) == 2:
            # Format: ("device", 123)
            return int(device_id_info[1])
        if hasattr(device_id_info, "instance"):
            return int(device_id_info.instance)
        device_id_str = str(device_id_info)
        if "," in device_id_str:
            # Format: "device,123"
            return int(device_id_str.split(",")[1])
    except (TypeError, ValueError, IndexError):
        logger.debug("Unparseable device identifier %r", device_id_info)

    return None


def bacnet_details(frame: Any) -> Dict[str, str]:
    """Build display-dialect detail entries for a decoded BACnet frame.

    Args:
        frame: A frame returned by decode_bacnet_frame

    Returns:
        Detail entries to merge into the record's detail map; empty if the
        frame carries no BACnet layer
    """
    details: Dict[str, str] = {}
    if frame is None:
        return details

    bvll = getattr(frame, "bvll", None) or getattr(frame, "bvlci", None)
    if bvll:
        details["BVLL Function"] = type(bvll).__name__

    npdu = getattr(frame, "npdu", None)
    network, mac = extract_network_and_mac(npdu)
    if network is not None:
        details["Source Network"] = str(network)
    if mac is not None:
        details["Source MAC Address"] = mac

    apdu = getattr(frame, "apdu", None)
    if not apdu:
        return details

    details["BACnet Message"] = type(apdu).__name__
    details["BACnet Type"] = extract_apdu_type(apdu)

    service_choice = extract_service_choice(apdu)
    apdu_type_code = extract_apdu_type_code(apdu)
    if service_choice is not None:
        if apdu_type_code == CONFIRMED_REQUEST_TYPE:
            details["BACnet Confirmed Service"] = ServiceChoiceMapping.decorate(service_choice, True)
        elif apdu_type_code == UNCONFIRMED_REQUEST_TYPE:
            details["BACnet Unconfirmed Service"] = ServiceChoiceMapping.decorate(service_choice, False)
        else:
            details["BACnet Service"] = str(service_choice)

    device_id = extract_device_id(apdu)
    if device_id is not None:
        details["Instance Number"] = str(device_id)
        if "BACnet Unconfirmed Service" not in details:
            details["BACnet Unconfirmed Service"] = ServiceChoiceMapping.decorate(
                ServiceChoice.I_AM.value, False
            )

    vendor_id = getattr(apdu, "vendorID", None)
    if vendor_id is not None:
        details["Vendor ID"] = str(vendor_id)

    invoke_id = getattr(apdu, "apduInvokeID", None)
    if invoke_id is not None:
        details["Invoke ID"] = str(invoke_id)

    return details
