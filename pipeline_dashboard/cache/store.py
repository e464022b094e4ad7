"""
Durable JSON snapshots of the cache tiers.

Each tier is persisted as one JSON document mapping cache key to entry.
The in-memory map in the manager is authoritative; these files only exist
so a restart comes back warm.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Union

from .core import CacheEntry, Tier

logger = logging.getLogger("cache.store")


class JsonTierStore:
    """Reads and writes the snapshot document of a single tier."""

    def __init__(self, path: Path, tier: Tier):
        self.path = Path(path)
        self.tier = tier

    def load(self) -> Dict[str, CacheEntry]:
        """
        Load every entry of the tier.

        Never raises. A missing file is an empty tier; an unreadable or
        corrupt document makes the whole tier empty (logged).
        """
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Discarding unreadable {self.tier.value} cache {self.path}: {e}")
            return {}

        if not isinstance(document, dict):
            logger.warning(f"Discarding {self.tier.value} cache {self.path}: not a JSON object")
            return {}

        entries: Dict[str, CacheEntry] = {}
        for key, raw in document.items():
            try:
                entries[key] = CacheEntry.from_dict(raw, self.tier)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed {self.tier.value} entry {key!r}: {e}")
        return entries

    def save(self, entries: Dict[str, CacheEntry]) -> bool:
        """
        Write the full tier document.

        The document goes to a temp file in the same directory and is then
        renamed over the target, so readers see either the old or the new
        snapshot. Failures are logged and swallowed.

        Returns:
            True if the snapshot was written
        """
        document = {key: entry.to_dict() for key, entry in entries.items()}
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_path, self.path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error writing {self.tier.value} cache {self.path}: {e}")
            if tmp_path is not None and os.path.exists(tmp_path):
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.debug(f"Could not remove temp file {tmp_path}")
            return False

    def remove(self) -> bool:
        """Delete the tier file. Returns True if a file was removed."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Error removing {self.tier.value} cache {self.path}: {e}")
            return False


class DurableCacheStore:
    """
    Directory holding one snapshot file per tier.

    Usage:
        store = DurableCacheStore(Path(".cache"))
        entries = store.for_tier(Tier.BRANCHES).load()
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self._stores = {
            tier: JsonTierStore(self.directory / tier.filename, tier)
            for tier in Tier
        }

    def for_tier(self, tier: Tier) -> JsonTierStore:
        return self._stores[tier]

    def clear(self) -> int:
        """
        Remove every tier file.

        Returns:
            Number of files removed
        """
        removed = sum(1 for store in self._stores.values() if store.remove())
        if removed:
            logger.info(f"Removed {removed} cache files from {self.directory}")
        return removed
