"""
Durable watermark storage.

A store persists a single position per cursor. Commits are durable before
they return and never move the position backwards; only ``reset`` rewinds,
and only the tag refresh cursor uses it.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from ..exceptions import PersistenceError
from ..models.records import Position, PositionType, Watermark, position_to_text

logger = logging.getLogger(__name__)


class WatermarkStore(ABC):
    """Abstract durable cursor."""

    def __init__(self, position_type: PositionType, default: Position):
        self.position_type = position_type
        self.default = default

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location, for logs and diagnostics."""
        pass

    @abstractmethod
    def read(self) -> Optional[Watermark]:
        """
        Read the persisted watermark.

        Returns:
            The watermark, or None if nothing has been persisted

        Raises:
            PersistenceError: If the stored value cannot be read or parsed
        """
        pass

    @abstractmethod
    def write(self, watermark: Watermark) -> None:
        """
        Durably persist a watermark.

        Raises:
            PersistenceError: If the write is not confirmed durable
        """
        pass

    def load(self) -> Position:
        """Return the persisted position, or the default if none was persisted."""
        watermark = self.read()
        if watermark is None:
            logger.info(f"No watermark at {self.location}, starting from {position_to_text(self.default)}")
            return self.default
        if watermark.position_type != self.position_type:
            raise PersistenceError(
                f"Watermark at {self.location} has type {watermark.position_type.value}, "
                f"expected {self.position_type.value}"
            )
        return watermark.position

    def commit(self, position: Position) -> None:
        """
        Durably advance the watermark.

        Raises:
            PersistenceError: If the write fails or would move the watermark backwards
        """
        current = self.load()
        try:
            backwards = position < current
        except TypeError as e:
            raise PersistenceError(f"Cannot compare {position!r} with stored {current!r}") from e
        if backwards:
            raise PersistenceError(
                f"Refusing to move watermark at {self.location} backwards from "
                f"{position_to_text(current)} to {position_to_text(position)}"
            )
        self.write(Watermark(position=position, position_type=self.position_type))
        logger.debug(f"Committed watermark {position_to_text(position)} to {self.location}")

    def force(self, position: Position) -> None:
        """Overwrite the watermark without the monotonic check (operator use only)."""
        logger.warning(f"Forcing watermark at {self.location} to {position_to_text(position)}")
        self.write(Watermark(position=position, position_type=self.position_type))

    def reset(self) -> None:
        """Rewind to the default position."""
        logger.info(f"Resetting watermark at {self.location} to {position_to_text(self.default)}")
        self.write(Watermark(position=self.default, position_type=self.position_type))


class FileWatermarkStore(WatermarkStore):
    """Watermark kept in a small JSON file, replaced atomically on every commit."""

    def __init__(self, path: Union[str, Path], position_type: PositionType, default: Position):
        super().__init__(position_type, default)
        self.path = Path(path)

    @property
    def location(self) -> str:
        return str(self.path)

    def read(self) -> Optional[Watermark]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return Watermark.from_document(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Watermark file {self.path} is unreadable or corrupt: {e}") from e

    def write(self, watermark: Watermark) -> None:
        directory = self.path.parent
        temp_path = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=directory, prefix=f".{self.path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(watermark.to_document(), f, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
            temp_path = None
            self._fsync_directory(directory)
        except OSError as e:
            raise PersistenceError(f"Could not write watermark file {self.path}: {e}") from e
        finally:
            if temp_path is not None and os.path.exists(temp_path):
                os.unlink(temp_path)

    @staticmethod
    def _fsync_directory(directory: Path) -> None:
        # The rename is only durable once the directory entry is flushed
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


class WatermarkCell:
    """
    Single owner of the in-memory watermark.

    Loaded once at startup and advanced only by the coordinator's commit step,
    after the store has confirmed the write.
    """

    def __init__(self, store: WatermarkStore):
        self.store = store
        self._lock = threading.Lock()
        self._current: Optional[Position] = None
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def current(self) -> Optional[Position]:
        """Last loaded or committed position, None before load()."""
        return self._current

    def load(self) -> Position:
        """Load from the store on first call; later calls return the cached value."""
        with self._lock:
            if not self._loaded:
                self._current = self.store.load()
                self._loaded = True
                logger.info(f"Loaded watermark {position_to_text(self._current)} from {self.store.location}")
            return self._current

    def advance(self, position: Position) -> None:
        """
        Commit a new position, then publish it in memory.

        Raises:
            PersistenceError: If the store rejects or fails the commit
        """
        with self._lock:
            if not self._loaded:
                raise PersistenceError("Watermark advanced before it was loaded")
            if position < self._current:
                raise PersistenceError(
                    f"Refusing to move watermark backwards from {position_to_text(self._current)} "
                    f"to {position_to_text(position)}"
                )
            self.store.commit(position)
            self._current = position

    def reset(self) -> None:
        """Rewind store and cell to the default position."""
        with self._lock:
            self.store.reset()
            self._current = self.store.default
            self._loaded = True
