"""
Deep decode pass: drive tshark over a capture and parse its field output.

tshark writes one tab-separated line per frame matching the BACnet display
filter. Its output is spooled to a temporary file before parsing so memory
use stays bounded by a single line.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from typing import Any, Dict, Iterator, List, Optional

from .constants import (
    APDU_TYPE_NAMES,
    BACNET_PROTOCOL,
    CANCEL_CHECK_EVERY_FRAMES,
    DEEP_PROGRESS_EVERY_RECORDS,
    IP_PROTOCOL_NAMES,
    TSHARK_CANDIDATE_PATHS,
    TSHARK_DISPLAY_FILTER,
    TSHARK_ENV_VAR,
    TSHARK_FIELDS,
    ServiceChoiceMapping,
)
from .detail_fields import parse_service_code, split_values
from .errors import (
    CaptureOpenError,
    DeepDecodeError,
    OperationCancelled,
    ResourceExhaustedError,
    ToolUnavailable,
)
from .models import PacketRecord
from .progress import ProgressCallback, check_cancelled, emit_progress, is_cancelled, percent_of

logger = logging.getLogger(__name__)

PHASE = "Deep decode"

# Seconds between cancellation checks while tshark runs
WAIT_POLL_SECONDS = 0.5
STDERR_TAIL_CHARS = 2000

# tshark field -> detail key, for the plain-valued BACnet fields
PLAIN_DETAIL_FIELDS: Dict[str, str] = {
    "bacapp.invoke_id": "Invoke ID",
    "bacapp.property_identifier": "Property",
    "bacapp.vendor_identifier": "Vendor ID",
    "bacapp.object_name": "Object Name",
}


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def resolve_tshark_path(explicit: Optional[str] = None) -> str:
    """Locate the tshark executable.

    The lookup order is the explicit argument, the environment variable,
    the PATH, then the well-known install locations.

    Args:
        explicit: Path or command name given by the caller

    Returns:
        The path of an executable tshark

    Raises:
        ToolUnavailable: If no executable tshark can be found
    """
    configured = explicit or os.environ.get(TSHARK_ENV_VAR)
    if configured:
        if _is_executable(configured):
            return configured
        found = shutil.which(configured)
        if found:
            return found
        raise ToolUnavailable(f"tshark not found or not executable: {configured}")

    found = shutil.which("tshark")
    if found:
        return found

    for candidate in TSHARK_CANDIDATE_PATHS:
        if _is_executable(candidate):
            return candidate

    raise ToolUnavailable(
        "tshark was not found. Install Wireshark or set "
        f"{TSHARK_ENV_VAR} to the tshark executable."
    )


def build_command(tshark_path: str, pcap_file: str) -> List[str]:
    """Build the tshark command line for a capture file."""
    command = [
        tshark_path,
        "-r", pcap_file,
        "-Y", TSHARK_DISPLAY_FILTER,
        "-T", "fields",
        "-E", "header=n",
        "-E", "separator=/t",
        "-E", "quote=n",
        "-E", "occurrence=a",
        "-E", "aggregator=,",
    ]
    for field_name in TSHARK_FIELDS:
        command.extend(["-e", field_name])
    return command


def _to_int(value: str, default: int = 0) -> int:
    try:
        return int(value)
    except ValueError:
        return default


def _first(value: str) -> str:
    parts = split_values(value)
    return parts[0] if parts else ""


def _decorate_service(value: str, confirmed: bool) -> str:
    code = parse_service_code(value)
    return ServiceChoiceMapping.decorate(code, confirmed) if code is not None else value


def _apdu_type_name(value: str) -> str:
    code = parse_service_code(value)
    if code is None or code not in APDU_TYPE_NAMES:
        return value
    return f"{APDU_TYPE_NAMES[code]}({code})"


def bacnet_field_details(fields: Dict[str, str]) -> Dict[str, str]:
    """Turn the BACnet tshark fields of one frame into display detail entries.

    Args:
        fields: tshark field name -> raw value, blanks allowed

    Returns:
        Detail entries for the non-blank fields
    """
    details: Dict[str, str] = {}

    apdu_type = _first(fields.get("bacapp.type", ""))
    if apdu_type:
        details["BACnet Type"] = _apdu_type_name(apdu_type)

    confirmed = _first(fields.get("bacapp.confirmed_service", ""))
    unconfirmed = _first(fields.get("bacapp.unconfirmed_service", ""))
    if confirmed:
        details["BACnet Confirmed Service"] = _decorate_service(confirmed, True)
    if unconfirmed:
        details["BACnet Unconfirmed Service"] = _decorate_service(unconfirmed, False)
    if confirmed or unconfirmed:
        details["BACnet Service"] = (
            details.get("BACnet Confirmed Service") or details["BACnet Unconfirmed Service"]
        )

    object_types = split_values(fields.get("bacapp.objectType", ""))
    if object_types:
        details["Object Type"] = object_types[0]
        if len(object_types) > 1:
            details["All Object Types"] = ",".join(object_types)

    instances = split_values(fields.get("bacapp.instance_number", ""))
    if instances:
        details["Instance Number"] = instances[0]
        if len(instances) > 1:
            details["All Instances"] = ",".join(instances)

    for field_name, detail_key in PLAIN_DETAIL_FIELDS.items():
        value = fields.get(field_name, "").strip()
        if value:
            details[detail_key] = _first(value) if field_name != "bacapp.object_name" else value

    return details


def parse_fields_line(line: str) -> PacketRecord:
    """Parse one tab-separated tshark output line into a record.

    Args:
        line: One output line, without its line terminator

    Returns:
        The decoded record, labelled as BACnet

    Raises:
        ValueError: If the line does not carry the expected field count or
            its frame number is not an integer
    """
    values = line.split("\t")
    if len(values) != len(TSHARK_FIELDS):
        raise ValueError(f"expected {len(TSHARK_FIELDS)} fields, got {len(values)}")

    fields = {name: value.strip() for name, value in zip(TSHARK_FIELDS, values)}
    number = int(fields["frame.number"])

    try:
        timestamp = float(fields["frame.time_epoch"]) if fields["frame.time_epoch"] else 0.0
    except ValueError:
        timestamp = 0.0

    source_port = _to_int(_first(fields["udp.srcport"]))
    destination_port = _to_int(_first(fields["udp.dstport"]))
    if source_port == 0 and destination_port == 0:
        source_port = _to_int(_first(fields["tcp.srcport"]))
        destination_port = _to_int(_first(fields["tcp.dstport"]))

    ip_proto = _first(fields["ip.proto"])

    return PacketRecord(
        number=number,
        timestamp=timestamp,
        length=_to_int(fields["frame.len"]),
        source_mac=fields["eth.src"] or None,
        destination_mac=fields["eth.dst"] or None,
        ethernet_type=fields["eth.type"] or None,
        source_ip=_first(fields["ip.src"]) or None,
        destination_ip=_first(fields["ip.dst"]) or None,
        protocol=IP_PROTOCOL_NAMES.get(ip_proto, ip_proto) or None,
        ttl=_to_int(_first(fields["ip.ttl"])),
        source_port=source_port,
        destination_port=destination_port,
        application_protocol=BACNET_PROTOCOL,
        details=bacnet_field_details(fields),
    )


class DeepDecoder:
    """Runs tshark over a capture and yields enriched BACnet records."""

    def __init__(
        self,
        tshark_path: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Any = None,
    ):
        """Initialize the decoder.

        Args:
            tshark_path: Explicit tshark location; resolved lazily when None
            progress: Optional progress callback
            cancel: Optional cancellation token with an ``is_set()`` method
        """
        self.tshark_path = tshark_path
        self.progress = progress
        self.cancel = cancel
        self.exit_code: Optional[int] = None
        self.malformed_lines = 0

    def is_available(self) -> bool:
        """Whether an executable tshark can be located."""
        try:
            resolve_tshark_path(self.tshark_path)
        except ToolUnavailable:
            return False
        return True

    def records(self, pcap_file: str) -> Iterator[PacketRecord]:
        """Return an iterator over the enriched records of a capture.

        The tool and the capture are checked before this returns; tshark
        itself runs on the first ``next()``.

        Raises:
            ToolUnavailable: If tshark cannot be found
            CaptureOpenError: If the capture file does not exist
        """
        tshark = resolve_tshark_path(self.tshark_path)
        if not os.path.isfile(pcap_file):
            raise CaptureOpenError(f"Capture file not found: {pcap_file}")
        return self._iterate(build_command(tshark, str(pcap_file)))

    def decode(self, pcap_file: str) -> List[PacketRecord]:
        return list(self.records(pcap_file))

    def _run(self, command: List[str], spool: Any, errors: Any) -> int:
        logger.info("Running %s", " ".join(command[:5]))
        emit_progress(self.progress, PHASE, "Starting tshark", 0)
        try:
            process = subprocess.Popen(command, stdout=spool, stderr=errors)
        except OSError as err:
            raise ToolUnavailable(f"Cannot execute {command[0]}: {err}") from err

        while True:
            try:
                return process.wait(timeout=WAIT_POLL_SECONDS)
            except subprocess.TimeoutExpired:
                if is_cancelled(self.cancel):
                    process.kill()
                    process.wait()
                    logger.info("tshark stopped after cancellation")
                    raise OperationCancelled()

    def _iterate(self, command: List[str]) -> Iterator[PacketRecord]:
        self.malformed_lines = 0
        produced = 0
        with tempfile.TemporaryFile() as spool, tempfile.TemporaryFile() as errors:
            self.exit_code = self._run(command, spool, errors)
            total_bytes = spool.tell()
            spool.seek(0)

            bytes_read = 0
            line_number = 0
            try:
                for raw_line in spool:
                    line_number += 1
                    bytes_read += len(raw_line)
                    if line_number % CANCEL_CHECK_EVERY_FRAMES == 0:
                        check_cancelled(self.cancel, PHASE)

                    line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                    if not line.strip():
                        continue
                    try:
                        record = parse_fields_line(line)
                    except ValueError as err:
                        self.malformed_lines += 1
                        logger.warning("Skipping malformed tshark line %d: %s", line_number, err)
                        continue

                    produced += 1
                    yield record

                    if produced % DEEP_PROGRESS_EVERY_RECORDS == 0:
                        emit_progress(
                            self.progress,
                            PHASE,
                            f"Processed {produced} BACnet frames",
                            percent_of(bytes_read, total_bytes),
                        )
            except MemoryError as err:
                raise ResourceExhaustedError(
                    "Out of memory while reading tshark output", records_completed=produced
                ) from err

            errors.seek(0)
            stderr = errors.read().decode("utf-8", errors="replace")[-STDERR_TAIL_CHARS:]

        if self.exit_code != 0:
            if produced == 0:
                raise DeepDecodeError(
                    f"tshark exited with code {self.exit_code}: {stderr.strip()}",
                    exit_code=self.exit_code,
                    stderr=stderr,
                )
            logger.warning(
                "tshark exited with code %d after %d records; keeping partial output",
                self.exit_code,
                produced,
            )

        emit_progress(self.progress, PHASE, f"Finished: {produced} BACnet frames", 100)
        logger.info("Deep decode produced %d records", produced)
