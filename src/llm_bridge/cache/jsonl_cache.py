"""
JSONL File Cache

Local, append-only cache stored as sharded JSONL files. The flat file format
is easy to inspect, diff and commit, so a cache directory can be shared
across a team or reused in a build without a database.

Directory layout (relative to the base dir):

    <model>/<kind>/<group>/<hash[0:2]>/<hash[2:4]>/<hash>.jsonl

Each line is one self-contained record:

    {"opt": {...}, "prompt": "...", "tempKey": 0, "completion": "..."}
"""

import os
import json
import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

from filelock import FileLock, Timeout

from .base import CacheBackend, CacheWriteError
from .keys import DEFAULT_CACHE_GROUP, UNKNOWN_MODEL, CacheKey, CacheRecord, canonical_json

logger = logging.getLogger(__name__)


def _path_segments(name: str) -> List[str]:
    """Split a model or group name into segments that stay below the base dir."""
    return [
        part
        for part in str(name).replace('\\', '/').split('/')
        if part not in ('', '.', '..')
    ]


def get_cache_file_path(key: CacheKey) -> Path:
    """
    Shard file for key, relative to the cache base dir.

    Absolute model or group names are treated as relative, and "." / ".."
    segments are dropped, so "/team/../x" becomes "team/x".
    """
    digest = key.digest
    return Path(
        *(_path_segments(key.model) or [UNKNOWN_MODEL]),
        key.kind.value,
        *(_path_segments(key.group) or _path_segments(DEFAULT_CACHE_GROUP)),
        digest[0:2],
        digest[2:4],
        f"{digest}.jsonl",
    )


class JsonlCache(CacheBackend):
    """
    File based cache backend.

    Lookups scan the shard file without locking, so a hit never waits on a
    writer; a read that races a writer simply misses. Stores take an
    exclusive lock on the shard, re-check for the record and append one
    complete line.
    """

    name = 'jsonl'

    def __init__(self, base_dir: Union[str, Path], lock_timeout: float = 10.0):
        """
        Initialize the JSONL cache.

        Args:
            base_dir: Root directory of the cache tree
            lock_timeout: Seconds to wait for a shard lock before giving up
        """
        self.base_dir = Path(base_dir).resolve()
        self.lock_timeout = lock_timeout

    def file_path(self, key: CacheKey) -> Path:
        """
        Absolute shard file path for key.

        Raises:
            ValueError: If the path would fall outside the base dir
        """
        file_path = (self.base_dir / get_cache_file_path(key)).resolve()
        if not file_path.is_relative_to(self.base_dir):
            raise ValueError(f"Cache path {file_path} is outside cache dir {self.base_dir}")
        return file_path

    async def lookup(self, key: CacheKey) -> Optional[CacheRecord]:
        try:
            file_path = self.file_path(key)
        except ValueError as e:
            logger.warning(f"Skipping JSONL lookup: {e}")
            return None
        loop = asyncio.get_running_loop()

        record, file_exists = await loop.run_in_executor(None, self._scan, file_path, key)

        if not file_exists:
            # Create the shard dir ahead of the store that usually follows
            # a miss; not awaited.
            loop.run_in_executor(None, self._make_parent_dir, file_path)

        if record is not None:
            logger.debug(f"JSONL cache hit for {key.digest[:16]}... (bucket {key.temp_bucket})")
        return record

    async def store(self, key: CacheKey, record: CacheRecord):
        try:
            file_path = self.file_path(key)
        except ValueError as e:
            raise CacheWriteError(str(e)) from e
        loop = asyncio.get_running_loop()

        try:
            written = await loop.run_in_executor(None, self._locked_append, file_path, key, record)
        except Timeout as e:
            raise CacheWriteError(
                f"Timed out after {self.lock_timeout}s waiting for lock on {file_path}"
            ) from e
        except OSError as e:
            raise CacheWriteError(f"Failed to write cache record to {file_path}: {e}") from e

        if written:
            logger.debug(f"Cached {key.kind.value} for key {key.digest[:16]}...")
        else:
            logger.debug(f"Record for key {key.digest[:16]}... already cached, skipped write")

    def _scan(self, file_path: Path, key: CacheKey) -> Tuple[Optional[CacheRecord], bool]:
        """
        Scan a shard file for key.

        Returns:
            (record or None, whether the shard file exists)
        """
        response_field = key.kind.value
        expected_opt = json.loads(canonical_json(key.options))

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                for line in f:
                    # Unterminated last line: an append in progress
                    if not line.endswith('\n'):
                        break

                    value = json.loads(line)
                    if not isinstance(value, dict):
                        logger.debug(f"Non-object record in {file_path}, treating as miss")
                        return None, True

                    if value.get('tempKey') != key.temp_bucket:
                        continue
                    if value.get('prompt') != key.prompt:
                        continue
                    if value.get('opt', {}) != expected_opt:
                        continue
                    if response_field not in value:
                        continue

                    return CacheRecord(
                        prompt=value['prompt'],
                        response=value[response_field],
                        options=value.get('opt', {}),
                    ), True
        except FileNotFoundError:
            return None, False
        except (OSError, ValueError) as e:
            logger.debug(f"Cache read error on {file_path}, treating as miss: {e}")

        return None, True

    def _make_parent_dir(self, file_path: Path):
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.debug(f"Could not create cache dir {file_path.parent}: {e}")

    def _locked_append(self, file_path: Path, key: CacheKey, record: CacheRecord) -> bool:
        """Append record under the shard lock. Returns False if it was already there."""
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with FileLock(f"{file_path}.lock", timeout=self.lock_timeout):
            existing, _ = self._scan(file_path, key)
            if existing is not None:
                return False

            self._drop_partial_tail(file_path)

            line = canonical_json({
                'prompt': record.prompt,
                'tempKey': key.temp_bucket,
                'opt': record.options,
                key.kind.value: record.response,
            }) + '\n'

            with open(file_path, 'ab') as f:
                f.write(line.encode('utf-8'))
                f.flush()
                os.fsync(f.fileno())

        return True

    def _drop_partial_tail(self, file_path: Path):
        """Truncate an unterminated last line left behind by a crashed writer."""
        try:
            with open(file_path, 'r+b') as f:
                f.seek(0, os.SEEK_END)
                size = f.tell()
                if size == 0:
                    return
                f.seek(size - 1)
                if f.read(1) == b'\n':
                    return

                f.seek(0)
                keep = f.read().rfind(b'\n') + 1
                logger.warning(f"Dropping partial record at end of {file_path}")
                f.truncate(keep)
        except FileNotFoundError:
            return
