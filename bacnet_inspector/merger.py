"""
Combine generic-pass records with deep-decode records by frame number.
"""

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Sequence, Tuple

from .constants import BACNET_PROTOCOL
from .models import PacketRecord

logger = logging.getLogger(__name__)


def build_frame_index(records: Iterable[PacketRecord]) -> Dict[int, int]:
    """Map each complete frame's number to the position of its first record.

    Fragments are not indexed, so they never receive deep-decode details.
    """
    index: Dict[int, int] = {}
    for position, record in enumerate(records):
        if not record.is_fragment:
            index.setdefault(record.number, position)
    return index


def is_enrichment(record: PacketRecord) -> bool:
    """Whether a deep-decode record carries BACnet details to merge."""
    return record.application_protocol == BACNET_PROTOCOL and bool(record.details)


def merge_records(
    generic: Sequence[PacketRecord], enriched: Iterable[PacketRecord]
) -> Tuple[List[PacketRecord], int]:
    """Merge enriched records into the generic record set.

    Every generic record whose frame number also appears among the enriched
    records is labelled BACnet and gets its details updated key by key, the
    enriched value winning. Enriched records without a complete generic
    counterpart are dropped. The input records are not modified.

    Args:
        generic: Complete record set of the generic pass, in frame order
        enriched: Records of the deep decode pass

    Returns:
        A tuple of (merged records, number of records enriched)
    """
    merged = list(generic)
    index = build_frame_index(merged)
    enriched_count = 0
    orphans = 0

    for extra in enriched:
        if not is_enrichment(extra):
            continue
        position = index.get(extra.number)
        if position is None:
            orphans += 1
            continue

        current = merged[position]
        details = dict(current.details)
        details.update(extra.details)
        merged[position] = replace(current, application_protocol=BACNET_PROTOCOL, details=details)
        enriched_count += 1

    if orphans:
        logger.warning("%d deep-decode records had no matching frame and were dropped", orphans)
    logger.info("Enriched %d records with deep-decode details", enriched_count)

    return merged, enriched_count
