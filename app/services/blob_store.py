"""Local-directory store for encrypted transfer payloads."""
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator

from app.services.errors import StorageFailure

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


class LocalBlobStore:
    def __init__(self, root: str | os.PathLike):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, locator: str) -> Path:
        if not locator or "/" in locator or "\\" in locator or locator in (".", ".."):
            raise StorageFailure(f"invalid locator: {locator!r}")
        return self.root / locator

    @contextmanager
    def open_write(self, locator: str) -> Iterator[BinaryIO]:
        """Write to ``<locator>.part`` and publish it under ``locator`` on success."""
        final = self._path(locator)
        partial = final.with_name(final.name + PARTIAL_SUFFIX)
        try:
            fh = open(partial, "wb")
        except OSError as e:
            raise StorageFailure(f"cannot open {locator} for writing: {e}") from e
        try:
            with fh:
                yield fh
            os.replace(partial, final)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise StorageFailure(f"cannot write {locator}: {e}") from e
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

    def open_read(self, locator: str) -> BinaryIO:
        try:
            return open(self._path(locator), "rb")
        except OSError as e:
            raise StorageFailure(f"cannot open {locator} for reading: {e}") from e

    def exists(self, locator: str) -> bool:
        return self._path(locator).is_file()

    def remove(self, locator: str) -> bool:
        path = self._path(locator)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(f"cannot remove {locator}: {e}") from e
        logger.debug("Removed blob %s", locator)
        return True
