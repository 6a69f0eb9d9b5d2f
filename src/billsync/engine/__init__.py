"""
Sync engine: evaluator, fetcher, transformer, coordinator and tag refresh.
"""

from .expressions import evaluate, parse
from .fetcher import RecordFetcher
from .refresh import TagRefresher
from .sync import SyncCoordinator
from .templates import parse_template, render
from .transforms import FieldTransformer, PostingTransformer

__all__ = [
    "evaluate",
    "parse",
    "parse_template",
    "render",
    "RecordFetcher",
    "FieldTransformer",
    "PostingTransformer",
    "SyncCoordinator",
    "TagRefresher",
]
