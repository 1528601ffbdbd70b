"""
Client-side cache of classes and bookings.

Storage behaves like a browser's localStorage: string values under string
keys, persisted to one JSON file, with a fixed byte quota. When a save does
not fit, the cache gives ground in a fixed order: photos are stripped from
the oldest entries first, then the oldest entries are dropped, and only when
nothing is left to shed does the save fail.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("herd.cache")

CLASSES_KEY = "herd-classes"
BOOKINGS_KEY = "herd-bookings"
PROFILE_KEY = "herd-profile"


class QuotaExceededError(Exception):
    pass


class LocalStorage:
    def __init__(self, path: Path, quota_bytes: int):
        self.path = Path(path)
        self.quota_bytes = quota_bytes
        self._items: Dict[str, str] = {}
        if self.path.exists():
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    self._items = json.load(f)
            except (OSError, ValueError):
                logger.warning("Local storage at %s unreadable, starting empty", self.path)
                self._items = {}

    @staticmethod
    def _size(items: Dict[str, str]) -> int:
        return sum(len(k.encode("utf-8")) + len(v.encode("utf-8")) for k, v in items.items())

    def usage(self) -> int:
        return self._size(self._items)

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        candidate = {**self._items, key: value}
        if self._size(candidate) > self.quota_bytes:
            raise QuotaExceededError(f"Saving {key} would exceed {self.quota_bytes} bytes")
        self._items = candidate
        self._flush()

    def remove_item(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            self._flush()

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._items, f)
        os.replace(tmp, self.path)


def merge_entities(local: Iterable[Dict[str, Any]], remote: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Union by id. The server copy wins on collision, local-only entries are
    kept, server-only entries are appended in server order."""
    remote_by_id = {}
    for item in remote:
        remote_by_id[item["id"]] = item
    merged = []
    seen = set()
    for item in local:
        merged.append(remote_by_id.get(item["id"], item))
        seen.add(item["id"])
    merged.extend(item for item_id, item in remote_by_id.items() if item_id not in seen)
    return merged


def _oldest_first(entities: List[Dict[str, Any]]) -> List[int]:
    return sorted(range(len(entities)), key=lambda i: entities[i].get("createdAt") or "")


class LocalCache:
    def __init__(self, storage: LocalStorage):
        self.storage = storage

    def _load(self, key: str) -> List[Dict[str, Any]]:
        raw = self.storage.get_item(key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Cached %s is corrupt, ignoring it", key)
            return []
        return data if isinstance(data, list) else []

    def _try_save(self, key: str, entities: List[Dict[str, Any]]) -> bool:
        try:
            self.storage.set_item(key, json.dumps(entities))
        except QuotaExceededError:
            return False
        return True

    def save(self, key: str, entities: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
        """Store `entities`, degrading if the quota demands it.

        Returns what was actually stored (possibly without some photos or
        entries), or None if even an empty list would not fit.
        """
        entities = list(entities)
        if self._try_save(key, entities):
            return entities

        order = _oldest_first(entities)
        for i in order:
            if entities[i].get("photos"):
                logger.info("Removing %d photos from %s to fit local storage", len(entities[i]["photos"]), entities[i]["id"])
                entities[i] = {**entities[i], "photos": []}
                if self._try_save(key, entities):
                    return entities

        dropped = set()
        for i in order:
            dropped.add(i)
            remaining = [e for j, e in enumerate(entities) if j not in dropped]
            if self._try_save(key, remaining):
                logger.warning("Local storage full: kept the newest %d of %d %s", len(remaining), len(entities), key)
                return remaining

        logger.error("Unable to save %s locally due to storage limitations", key)
        return None

    # ---------- Classes ----------
    def load_classes(self) -> List[Dict[str, Any]]:
        return self._load(CLASSES_KEY)

    def save_classes(self, classes: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
        return self.save(CLASSES_KEY, classes)

    def upsert_class(self, cls: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
        return self.save_classes(merge_entities(self.load_classes(), [cls]))

    def remove_class(self, class_id: str) -> Optional[List[Dict[str, Any]]]:
        return self.save_classes([c for c in self.load_classes() if c["id"] != class_id])

    # ---------- Bookings ----------
    def load_bookings(self) -> List[Dict[str, Any]]:
        return self._load(BOOKINGS_KEY)

    def save_bookings(self, bookings: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
        return self.save(BOOKINGS_KEY, bookings)

    def upsert_booking(self, booking: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
        return self.save_bookings(merge_entities(self.load_bookings(), [booking]))

    # ---------- Profile ----------
    def load_profile(self) -> Optional[Dict[str, Any]]:
        raw = self.storage.get_item(PROFILE_KEY)
        return json.loads(raw) if raw else None

    def save_profile(self, profile: Dict[str, Any]) -> None:
        try:
            self.storage.set_item(PROFILE_KEY, json.dumps(profile))
        except QuotaExceededError:
            logger.warning("Profile not cached: local storage full")
