"""Firestore-backed idempotency keys for pipeline processors.

Each key ``"<processor>:<thread_id>"`` maps to the content hash of the last
successful run plus its timestamp. A processor is skipped when the stored
hash equals the hash of its current inputs.

Failure policy: lookups that fail log a warning and report "do not skip";
writes that fail log and return False. Neither raises, so an unavailable
store only costs redundant work.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from src.common.config import FirestoreConfig, load_firestore_config
from src.common.firestore import get_firestore_client, idempotency_keys_collection

if TYPE_CHECKING:
    from google.cloud.firestore import Client as FirestoreClient

logger = logging.getLogger(__name__)

# Firestore write batches accept at most 500 operations.
MAX_BATCH_WRITES = 500


def build_idempotency_key(processor: str, entity_id: str) -> str:
    return f"{processor}:{entity_id}"


def compute_content_hash(*parts: Any) -> str:
    """SHA-256 over a canonical JSON encoding of ``parts``.

    Dict keys are sorted, so logically equal inputs hash identically.
    Callers sort any collection whose order is not meaningful.
    """
    canonical = json.dumps(list(parts), sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _document_id(key: str) -> str:
    # "/" is a path separator in Firestore document ids. "%" is escaped first
    # so two distinct keys never map to the same document.
    return key.replace("%", "%25").replace("/", "%2F")


class IdempotencyStore:
    """Skip-or-run decisions backed by the pipeline_idempotency_keys collection."""

    def __init__(
        self,
        client: Optional["FirestoreClient"] = None,
        config: Optional[FirestoreConfig] = None,
    ):
        self.config = config or load_firestore_config()
        self._client = client

    @property
    def client(self) -> "FirestoreClient":
        if self._client is None:
            self._client = get_firestore_client(self.config)
        return self._client

    @property
    def keys_ref(self):
        return self.client.collection(idempotency_keys_collection(self.config.collection_prefix))

    def _ref(self, key: str):
        return self.keys_ref.document(_document_id(key))

    def check(self, key: str, content_hash: str) -> bool:
        """True when a previous run stored exactly ``content_hash`` under ``key``."""
        try:
            snapshot = self._ref(key).get()
        except Exception as e:
            logger.warning("Idempotency check failed", extra={"key": key, "error": str(e)})
            return False
        if not snapshot.exists:
            return False
        data = snapshot.to_dict() or {}
        return bool(content_hash) and data.get("hash") == content_hash

    def store(self, key: str, content_hash: str) -> bool:
        try:
            self._ref(key).set(self._record(key, content_hash))
            return True
        except Exception as e:
            logger.warning("Idempotency store failed", extra={"key": key, "error": str(e)})
            return False

    def invalidate(self, key: str) -> bool:
        """Clear the stored hash so the next run cannot match it."""
        return self.store(key, "")

    def batch_check(self, items: Sequence[Tuple[str, str]]) -> Dict[str, bool]:
        """Skip decisions for many (key, hash) pairs in one round trip."""
        decisions = {key: False for key, _ in items}
        if not items:
            return decisions

        expected = dict(items)
        try:
            snapshots = list(self.client.get_all([self._ref(key) for key in expected]))
        except Exception as e:
            logger.warning(
                "Idempotency batch check failed, running all",
                extra={"keys": len(expected), "error": str(e)},
            )
            return decisions

        for snapshot in snapshots:
            if not snapshot.exists:
                continue
            data = snapshot.to_dict() or {}
            key = data.get("key")
            if key in expected and expected[key] and data.get("hash") == expected[key]:
                decisions[key] = True
        return decisions

    def batch_check_stored(self, keys: Sequence[str]) -> Dict[str, bool]:
        """Whether each key holds a usable hash; cleared keys report False."""
        stored = {key: False for key in keys}
        if not keys:
            return stored
        try:
            for snapshot in self.client.get_all([self._ref(key) for key in stored]):
                if snapshot.exists:
                    data = snapshot.to_dict() or {}
                    if data.get("key") in stored and data.get("hash"):
                        stored[data["key"]] = True
        except Exception as e:
            logger.warning(
                "Idempotency stored-hash check failed",
                extra={"keys": len(stored), "error": str(e)},
            )
            return {key: False for key in keys}
        return stored

    def batch_check_exists(self, keys: Sequence[str]) -> Dict[str, bool]:
        """Whether each key has ever been stored (any hash, including cleared ones)."""
        found = {key: False for key in keys}
        if not keys:
            return found
        try:
            for snapshot in self.client.get_all([self._ref(key) for key in found]):
                if snapshot.exists:
                    key = (snapshot.to_dict() or {}).get("key")
                    if key in found:
                        found[key] = True
        except Exception as e:
            logger.warning(
                "Idempotency existence check failed",
                extra={"keys": len(found), "error": str(e)},
            )
            return {key: False for key in keys}
        return found

    def batch_store(self, items: Sequence[Tuple[str, str]]) -> bool:
        """Write many (key, hash) pairs with Firestore write batches."""
        if not items:
            return True
        entries: List[Tuple[str, str]] = list(items)
        try:
            for start in range(0, len(entries), MAX_BATCH_WRITES):
                batch = self.client.batch()
                for key, content_hash in entries[start : start + MAX_BATCH_WRITES]:
                    batch.set(self._ref(key), self._record(key, content_hash))
                batch.commit()
        except Exception as e:
            logger.warning(
                "Idempotency batch store failed",
                extra={"keys": len(entries), "error": str(e)},
            )
            return False
        return True

    @staticmethod
    def _record(key: str, content_hash: str) -> Dict[str, Any]:
        return {
            "key": key,
            "hash": content_hash,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
