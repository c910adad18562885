"""
BACnet capture inspector package.
"""

from .analyzer import AnalysisOptions, AnalysisResult, BACnetAnalyzer
from .constants import ServiceChoiceMapping
from .knowledge_base import DeviceKnowledgeBase, merge_knowledge
from .models import AggregateStatistics, AnalysisSnapshot, PacketRecord, TcpHealthCounters
from .snapshot_codec import is_valid_snapshot, load_snapshot, save_snapshot

__all__ = [
    "AnalysisOptions",
    "AnalysisResult",
    "BACnetAnalyzer",
    "ServiceChoiceMapping",
    "DeviceKnowledgeBase",
    "merge_knowledge",
    "AggregateStatistics",
    "AnalysisSnapshot",
    "PacketRecord",
    "TcpHealthCounters",
    "is_valid_snapshot",
    "load_snapshot",
    "save_snapshot",
]
