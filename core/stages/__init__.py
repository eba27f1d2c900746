"""Pipeline stages, each independently invocable and idempotent."""
from .audit import AuditTracker
from .converter import FeedConverter
from .stage_loader import StageLoader
from .consistency_gate import ConsistencyGate
from .merge_engine import MergeEngine
from .retention_sweeper import RetentionSweeper

__all__ = [
    'AuditTracker',
    'FeedConverter',
    'StageLoader',
    'ConsistencyGate',
    'MergeEngine',
    'RetentionSweeper'
]
