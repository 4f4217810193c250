"""
Device Store

Capability interface over the platform's key-value storage. The sync
client never touches platform APIs directly; deployments hand it an
implementation of DeviceStore.
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from hashlib import sha256
from pathlib import Path

from consent_lineage.exceptions import StorageError

logger = logging.getLogger(__name__)


class DeviceStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Value stored under `key`, or None. Raises StorageError on read failure."""

    @abstractmethod
    async def put(self, key: str, value: bytes) -> None:
        """Store `value` under `key`. Raises StorageError on write failure."""


class InMemoryDeviceStore(DeviceStore):
    def __init__(self):
        self._data: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def put(self, key: str, value: bytes) -> None:
        if not isinstance(value, bytes | bytearray):
            raise StorageError(f"Device store values must be bytes, got {type(value).__name__}", key=key)
        self._data[key] = bytes(value)


class FileDeviceStore(DeviceStore):
    """
    One file per key under a directory.

    Writes go to a temporary file in the same directory and are moved into
    place with an atomic replace, so a crash never leaves a partial value.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        # Keys contain '/', file names do not
        return self.directory / f"{sha256(key.encode('utf-8')).hexdigest()}.bin"

    async def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Cannot read device store key: {e}", key=key) from e

    async def put(self, key: str, value: bytes) -> None:
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(value)
                    f.flush()
                    os.fsync(f.fileno())
                Path(tmp_name).replace(path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError(f"Cannot write device store key: {e}", key=key) from e
        logger.debug(f"Stored {len(value)} bytes under {key}")
