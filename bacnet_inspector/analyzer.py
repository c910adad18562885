"""
Two-phase BACnet capture analysis.

The generic pass (scapy + bacpypes3) and the deep pass (tshark) run
concurrently, each with its own knowledge base. Their records and their
knowledge bases are then merged, and statistics are computed over the
merged set.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple

from .capture_decoder import CaptureDecoder
from .deep_decoder import DeepDecoder
from .errors import DeepDecodeError, ResourceExhaustedError, ToolUnavailable
from .knowledge_base import DeviceKnowledgeBase, merge_knowledge
from .merger import merge_records
from .models import AggregateStatistics, AnalysisSnapshot, PacketRecord
from .progress import ProgressCallback, check_cancelled, emit_progress
from .services import ServiceBreakdown, service_breakdown
from .stats_collector import calculate_statistics

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "bacnet_inspector"
PHASE = "Analysis"

DEEP_COMPLETED = "completed"
DEEP_SKIPPED = "skipped"
DEEP_UNAVAILABLE = "unavailable"
DEEP_FAILED = "failed"


@dataclass
class AnalysisOptions:
    """Options of one analysis run."""

    deep_decode: bool = True
    tshark_path: Optional[str] = None
    # Snapshot policy: keep only BACnet records in the packet array
    only_protocol_packets: bool = True
    keep_raw_data: bool = False
    progress: Optional[ProgressCallback] = None
    # Any object with is_set(), typically a threading.Event
    cancel: Any = None


class WarningCollector(logging.Handler):
    """Logging handler that keeps the ordered warning messages of one run."""

    def __init__(self, level: int = logging.WARNING):
        super().__init__(level)
        self.messages: List[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(record.getMessage())


class _EitherToken:
    """Cancellation token set when either the caller's or the internal one is."""

    def __init__(self, external: Any):
        self.external = external
        self.internal = threading.Event()

    def is_set(self) -> bool:
        return self.internal.is_set() or (self.external is not None and bool(self.external.is_set()))


@dataclass
class AnalysisResult:
    """Everything one analysis run produced."""

    pcap_file: str
    records: List[PacketRecord]
    statistics: AggregateStatistics
    knowledge_base: DeviceKnowledgeBase
    services: ServiceBreakdown
    warnings: List[str] = field(default_factory=list)
    deep_status: str = DEEP_SKIPPED
    deep_error: Optional[str] = None
    deep_records: int = 0
    enriched_count: int = 0

    @property
    def fragment_count(self) -> int:
        return sum(1 for record in self.records if record.is_fragment)

    def to_snapshot(self, only_protocol_packets: bool = True) -> AnalysisSnapshot:
        """Project the result into a snapshot ready to be saved."""
        return AnalysisSnapshot(
            source_file=self.pcap_file,
            statistics=self.statistics,
            knowledge_base=self.knowledge_base.to_snapshot(),
            packets=self.records,
            only_protocol_packets=only_protocol_packets,
        )


class BACnetAnalyzer:
    """Runs the generic and deep decode passes over a capture and merges them."""

    def __init__(self, options: Optional[AnalysisOptions] = None):
        self.options = options or AnalysisOptions()

    def analyze_pcap(self, filepath: str) -> AnalysisResult:
        """Analyze a capture file.

        The deep pass is optional: when tshark is missing or fails, the
        result of the generic pass alone is returned and the reason is
        recorded on the result.

        Args:
            filepath: Path to the pcap/pcapng file

        Returns:
            The analysis result

        Raises:
            CaptureOpenError: If the capture cannot be opened
            ResourceExhaustedError: If memory runs out during a pass
            OperationCancelled: If the cancellation token is set
        """
        collector = WarningCollector()
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.addHandler(collector)
        try:
            result = self._analyze(str(filepath))
        finally:
            package_logger.removeHandler(collector)
        result.warnings = list(collector.messages)
        return result

    def _analyze(self, filepath: str) -> AnalysisResult:
        options = self.options
        token = _EitherToken(options.cancel)

        deep_status = DEEP_SKIPPED
        deep_error: Optional[str] = None
        enriched: List[PacketRecord] = []
        deep_kb = DeviceKnowledgeBase()

        with ThreadPoolExecutor(max_workers=2) as pool:
            generic_future = pool.submit(self._generic_phase, filepath, token)
            deep_future = pool.submit(self._deep_phase, filepath, token) if options.deep_decode else None

            try:
                records, generic_kb = generic_future.result()
            except BaseException:
                token.internal.set()
                raise

            if deep_future is not None:
                try:
                    enriched, deep_kb = deep_future.result()
                    deep_status = DEEP_COMPLETED
                except ToolUnavailable as err:
                    deep_status, deep_error = DEEP_UNAVAILABLE, str(err)
                    logger.warning("Deep decode skipped: %s", err)
                except DeepDecodeError as err:
                    deep_status, deep_error = DEEP_FAILED, str(err)
                    logger.warning("Deep decode failed: %s", err)

        check_cancelled(options.cancel, PHASE)

        emit_progress(options.progress, PHASE, "Merging decode passes", 0)
        merged, enriched_count = merge_records(records, enriched)
        knowledge_base = merge_knowledge(generic_kb, deep_kb)

        emit_progress(options.progress, PHASE, "Computing statistics", 50)
        statistics = calculate_statistics(merged)
        services = service_breakdown(merged)
        emit_progress(options.progress, PHASE, "Analysis complete", 100)

        logger.info(
            "Analyzed %s: %d frames, %d enriched by deep decode",
            filepath,
            len(merged),
            enriched_count,
        )
        return AnalysisResult(
            pcap_file=filepath,
            records=merged,
            statistics=statistics,
            knowledge_base=knowledge_base,
            services=services,
            deep_status=deep_status,
            deep_error=deep_error,
            deep_records=len(enriched),
            enriched_count=enriched_count,
        )

    def _generic_phase(self, filepath: str, token: Any) -> Tuple[List[PacketRecord], DeviceKnowledgeBase]:
        decoder = CaptureDecoder(
            filepath,
            progress=self.options.progress,
            cancel=token,
            keep_raw_data=self.options.keep_raw_data,
        )
        return _collect(decoder.records(), "generic decode")

    def _deep_phase(self, filepath: str, token: Any) -> Tuple[List[PacketRecord], DeviceKnowledgeBase]:
        decoder = DeepDecoder(
            tshark_path=self.options.tshark_path,
            progress=self.options.progress,
            cancel=token,
        )
        return _collect(decoder.records(filepath), "deep decode")


def _collect(
    records: Iterable[PacketRecord], label: str
) -> Tuple[List[PacketRecord], DeviceKnowledgeBase]:
    """Drain one pass into a record list and its own knowledge base.

    Raises:
        ResourceExhaustedError: If memory runs out while accumulating records
    """
    kb = DeviceKnowledgeBase()
    collected: List[PacketRecord] = []
    try:
        for record in records:
            kb.process_packet(record)
            collected.append(record)
    except MemoryError as err:
        raise ResourceExhaustedError(
            f"Out of memory during {label}", records_completed=len(collected)
        ) from err
    return collected, kb
