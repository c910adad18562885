"""
Named access to packet detail maps.

Detail maps are free-form ``key -> value`` dictionaries filled by two
decoders with different naming conventions ("dialects"): the deep decoder
field dialect (``bacapp.instance_number``) and the display dialect used by
both decoders when they write detail entries (``Instance Number``). Every
key is first normalized and classified into a ``FieldKind``; code outside
this module reads detail maps only through the accessors below.
"""

import re
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Tuple


class FieldKind(Enum):
    """Closed set of detail fields the inspector understands."""

    INSTANCE_NUMBER = "instance_number"
    OBJECT_INSTANCE = "object_instance"
    DEVICE_NAME = "device_name"
    VENDOR = "vendor"
    APDU_TYPE = "apdu_type"
    CONFIRMED_SERVICE = "confirmed_service"
    UNCONFIRMED_SERVICE = "unconfirmed_service"
    SERVICE = "service"
    CONFIRMED_SERVICE_CODE = "confirmed_service_code"
    UNCONFIRMED_SERVICE_CODE = "unconfirmed_service_code"
    SERVICE_CODE = "service_code"
    OBJECT_TYPE = "object_type"
    OBJECT_TYPE_LIST = "object_type_list"
    INSTANCE_LIST = "instance_list"
    PROPERTY = "property"
    INITIATING_DEVICE = "initiating_device"
    ICMP_TYPE = "icmp_type"
    TCP_FLAGS = "tcp_flags"
    UNKNOWN = "unknown"


# Display dialect: the keys both decoders write
DISPLAY_KEYS: Dict[str, FieldKind] = {
    "Instance Number": FieldKind.INSTANCE_NUMBER,
    "Object Name": FieldKind.DEVICE_NAME,
    "Vendor ID": FieldKind.VENDOR,
    "BACnet Type": FieldKind.APDU_TYPE,
    "BACnet Confirmed Service": FieldKind.CONFIRMED_SERVICE,
    "BACnet Unconfirmed Service": FieldKind.UNCONFIRMED_SERVICE,
    "BACnet Service": FieldKind.SERVICE,
    "BACnet Confirmed Service Code": FieldKind.CONFIRMED_SERVICE_CODE,
    "BACnet Unconfirmed Service Code": FieldKind.UNCONFIRMED_SERVICE_CODE,
    "BACnet Service Code": FieldKind.SERVICE_CODE,
    "Object Type": FieldKind.OBJECT_TYPE,
    "All Object Types": FieldKind.OBJECT_TYPE_LIST,
    "All Instances": FieldKind.INSTANCE_LIST,
    "Property": FieldKind.PROPERTY,
    "Initiating Device Identifier": FieldKind.INITIATING_DEVICE,
    "ICMP Type": FieldKind.ICMP_TYPE,
    "TCP Flags": FieldKind.TCP_FLAGS,
}

# Deep decoder field dialect
DECODER_FIELD_KEYS: Dict[str, FieldKind] = {
    "bacapp.instance_number": FieldKind.INSTANCE_NUMBER,
    "bacapp.object_name": FieldKind.DEVICE_NAME,
    "bacapp.vendor_identifier": FieldKind.VENDOR,
    "bacapp.type": FieldKind.APDU_TYPE,
    "bacapp.confirmed_service": FieldKind.CONFIRMED_SERVICE,
    "bacapp.unconfirmed_service": FieldKind.UNCONFIRMED_SERVICE,
    "bacapp.objectType": FieldKind.OBJECT_TYPE,
    "bacapp.property_identifier": FieldKind.PROPERTY,
    "icmp.type": FieldKind.ICMP_TYPE,
    "tcp.flags": FieldKind.TCP_FLAGS,
}

_SEPARATORS = re.compile(r"[\s.\-]+")
_INTEGER = re.compile(r"\d+")


def normalize_key(key: Optional[str]) -> str:
    """Fold case and separators: ``"Instance Number"`` -> ``"instance_number"``."""
    return _SEPARATORS.sub("_", (key or "").strip().lower())


_KNOWN_KEYS: Dict[str, FieldKind] = {
    normalize_key(key): kind
    for table in (DISPLAY_KEYS, DECODER_FIELD_KEYS)
    for key, kind in table.items()
}


def _classify_unknown(normalized: str) -> FieldKind:
    # Substring rules for keys of dialects not listed above
    if "instance_number" in normalized:
        return FieldKind.INSTANCE_NUMBER
    if (
        "objectidentifier" in normalized
        or "device_instance" in normalized
        or "object_instance" in normalized
    ):
        return FieldKind.OBJECT_INSTANCE
    if "name" in normalized:
        return FieldKind.DEVICE_NAME
    if "vendor" in normalized:
        return FieldKind.VENDOR
    return FieldKind.UNKNOWN


def classify_key(key: Optional[str]) -> FieldKind:
    """Classify a detail key into a FieldKind."""
    normalized = normalize_key(key)
    kind = _KNOWN_KEYS.get(normalized)
    if kind is not None:
        return kind
    return _classify_unknown(normalized)


def is_name_key(key: Optional[str]) -> bool:
    """Whether a key can carry a device name; tested apart from its FieldKind."""
    return classify_key(key) is FieldKind.DEVICE_NAME or "name" in normalize_key(key)


def is_vendor_key(key: Optional[str]) -> bool:
    """Whether a key can carry a vendor id, so ``vendor_name`` is both."""
    return classify_key(key) is FieldKind.VENDOR or "vendor" in normalize_key(key)


def classified_items(details: Optional[Mapping[str, str]]) -> Iterator[Tuple[FieldKind, str, str]]:
    """Yield ``(kind, key, value)`` for every detail entry."""
    if not details:
        return
    for key, value in details.items():
        yield classify_key(key), key or "", value if value is not None else ""


def get_field(details: Optional[Mapping[str, str]], kind: FieldKind) -> Optional[str]:
    """Return the first non-blank value of the given kind, or None."""
    for item_kind, _key, value in classified_items(details):
        if item_kind is kind and value.strip():
            return value
    return None


def get_instance_number(details: Optional[Mapping[str, str]]) -> Optional[str]:
    return get_field(details, FieldKind.INSTANCE_NUMBER)


def get_object_type(details: Optional[Mapping[str, str]]) -> Optional[str]:
    return get_field(details, FieldKind.OBJECT_TYPE)


def get_property(details: Optional[Mapping[str, str]]) -> Optional[str]:
    return get_field(details, FieldKind.PROPERTY)


def get_apdu_type(details: Optional[Mapping[str, str]]) -> Optional[str]:
    return get_field(details, FieldKind.APDU_TYPE)


def get_confirmed_service(details: Optional[Mapping[str, str]]) -> Optional[str]:
    return get_field(details, FieldKind.CONFIRMED_SERVICE)


def get_unconfirmed_service(details: Optional[Mapping[str, str]]) -> Optional[str]:
    return get_field(details, FieldKind.UNCONFIRMED_SERVICE)


def get_icmp_type(details: Optional[Mapping[str, str]]) -> Optional[str]:
    return get_field(details, FieldKind.ICMP_TYPE)


def get_initiating_device(details: Optional[Mapping[str, str]]) -> Optional[str]:
    return get_field(details, FieldKind.INITIATING_DEVICE)


def has_confirmed_service(details: Optional[Mapping[str, str]]) -> bool:
    """Whether a confirmed service entry is present, even if blank."""
    return any(kind is FieldKind.CONFIRMED_SERVICE for kind, _k, _v in classified_items(details))


def has_unconfirmed_service(details: Optional[Mapping[str, str]]) -> bool:
    return any(kind is FieldKind.UNCONFIRMED_SERVICE for kind, _k, _v in classified_items(details))


def get_object_types(details: Optional[Mapping[str, str]]) -> List[str]:
    """All object types of a frame; the full list when present, else the single value."""
    return split_values(
        get_field(details, FieldKind.OBJECT_TYPE_LIST) or get_object_type(details)
    )


def get_instances(details: Optional[Mapping[str, str]]) -> List[str]:
    return split_values(
        get_field(details, FieldKind.INSTANCE_LIST) or get_instance_number(details)
    )


def split_values(text: Optional[str]) -> List[str]:
    """Split an aggregated ``"8,2"`` style value into trimmed parts."""
    if not text:
        return []
    return [part.strip() for part in text.split(",") if part.strip()]


def extract_digits(text: Optional[str]) -> str:
    """Keep only the characters 0-9. An empty result means "no candidate"."""
    if not text or not text.strip():
        return ""
    return "".join(ch for ch in text if "0" <= ch <= "9")


def parse_service_code(value: Optional[str]) -> Optional[int]:
    """Extract a service code from ``"12"`` or a decorated ``"readProperty(12)"``.

    Args:
        value: The raw or decorated service string

    Returns:
        The first integer embedded in the string, or None
    """
    if value is None or not value.strip():
        return None
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    match = _INTEGER.search(text)
    return int(match.group()) if match else None


def _service_code(
    details: Optional[Mapping[str, str]], code_kind: FieldKind, value_kind: FieldKind
) -> Optional[int]:
    code = get_field(details, code_kind)
    if code is not None:
        try:
            return int(code.strip())
        except ValueError:
            pass
    return parse_service_code(get_field(details, value_kind))


def confirmed_service_code(details: Optional[Mapping[str, str]]) -> Optional[int]:
    return _service_code(details, FieldKind.CONFIRMED_SERVICE_CODE, FieldKind.CONFIRMED_SERVICE)


def unconfirmed_service_code(details: Optional[Mapping[str, str]]) -> Optional[int]:
    return _service_code(
        details, FieldKind.UNCONFIRMED_SERVICE_CODE, FieldKind.UNCONFIRMED_SERVICE
    )


def generic_service_code(details: Optional[Mapping[str, str]]) -> Optional[int]:
    """Code of an undifferentiated ``BACnet Service`` entry."""
    return _service_code(details, FieldKind.SERVICE_CODE, FieldKind.SERVICE)
