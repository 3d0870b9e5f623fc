"""On-disk cache of the last pull request snapshot.

The cache only speeds up cold starts, so every failure here is logged and
swallowed: ``load`` returns None and ``save`` does nothing.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from config import get_data_dir
from errors import CacheUnavailableError
from models import PullRequestCache

logger = logging.getLogger(__name__)

CACHE_FILENAME = "cache.json"


class CacheStore:
    """Reads and atomically rewrites a single JSON snapshot file."""

    def __init__(self, path: Path | None = None):
        self.path = path or get_data_dir() / CACHE_FILENAME

    def load(self) -> PullRequestCache | None:
        try:
            return self._read()
        except CacheUnavailableError as e:
            logger.warning("Ignoring pull request cache: %s", e)
            return None

    def save(self, cache: PullRequestCache) -> None:
        try:
            self._write(cache)
        except CacheUnavailableError as e:
            logger.warning("Could not write pull request cache: %s", e)

    def _read(self) -> PullRequestCache | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheUnavailableError(f"{self.path}: {e}") from e
        try:
            return PullRequestCache.model_validate_json(raw)
        except ValidationError as e:
            raise CacheUnavailableError(f"{self.path}: {e.error_count()} invalid field(s)") from e

    def _write(self, cache: PullRequestCache) -> None:
        data = cache.model_dump_json(by_alias=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".cache-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(data)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise CacheUnavailableError(f"{self.path}: {e}") from e
