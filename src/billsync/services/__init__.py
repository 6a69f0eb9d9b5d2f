"""
Services for billsync.
"""

from .watermark import FileWatermarkStore, WatermarkCell, WatermarkStore

__all__ = [
    "WatermarkStore",
    "FileWatermarkStore",
    "WatermarkCell",
]
