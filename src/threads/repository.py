"""Firestore reads for threads, their messages and organization labels.

Collections:
- {prefix}threads: one document per thread, ``label_ids`` lists attached labels
- {prefix}messages: one document per message, linked by ``thread_id``
- {prefix}labels: organization labels, filtered by ``organization_id``
"""

import logging
from typing import Dict, Iterable, List, Optional, TYPE_CHECKING

from src.common.config import FirestoreConfig, load_firestore_config
from src.common.firestore import (
    get_firestore_client,
    labels_collection,
    messages_collection,
    threads_collection,
    where_filter,
)
from src.threads.models import Label, Thread, ThreadMessage

if TYPE_CHECKING:
    from google.cloud.firestore import Client as FirestoreClient

logger = logging.getLogger(__name__)

# Firestore caps "in" filters at 30 values.
IN_QUERY_CHUNK = 30


class ThreadRepositoryError(Exception):
    """Raised when threads cannot be read from Firestore."""

    pass


def _chunks(values: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class ThreadRepository:
    """Read access to threads with their messages and labels."""

    def __init__(
        self,
        client: Optional["FirestoreClient"] = None,
        config: Optional[FirestoreConfig] = None,
    ):
        self.config = config or load_firestore_config()
        self._client = client

    @property
    def client(self) -> "FirestoreClient":
        """Get or create Firestore client."""
        if self._client is None:
            self._client = get_firestore_client(self.config)
        return self._client

    @property
    def threads_ref(self):
        return self.client.collection(threads_collection(self.config.collection_prefix))

    @property
    def messages_ref(self):
        return self.client.collection(messages_collection(self.config.collection_prefix))

    @property
    def labels_ref(self):
        return self.client.collection(labels_collection(self.config.collection_prefix))

    def fetch_many(self, thread_ids: List[str]) -> Dict[str, Thread]:
        """Fetch threads by id with messages and labels attached.

        Ids without a thread document are simply absent from the result.

        Raises:
            ThreadRepositoryError: If the batch cannot be read at all.
        """
        unique_ids = list(dict.fromkeys(thread_ids))
        if not unique_ids:
            return {}

        try:
            refs = [self.threads_ref.document(thread_id) for thread_id in unique_ids]
            threads: Dict[str, Thread] = {}
            for snapshot in self.client.get_all(refs):
                if not snapshot.exists:
                    continue
                threads[snapshot.id] = Thread.from_firestore(snapshot.id, snapshot.to_dict() or {})

            if not threads:
                return {}

            messages = self._fetch_messages(list(threads))
            labels = self._fetch_labels({lid for t in threads.values() for lid in t.label_ids})
        except ThreadRepositoryError:
            raise
        except Exception as e:
            raise ThreadRepositoryError(f"Failed to fetch threads: {e}") from e

        for thread_id, thread in threads.items():
            thread.messages = messages.get(thread_id, [])
            thread.labels = [labels[lid] for lid in thread.label_ids if lid in labels]

        logger.info(
            "Fetched threads",
            extra={"requested": len(unique_ids), "found": len(threads)},
        )
        return threads

    def _fetch_messages(self, thread_ids: List[str]) -> Dict[str, List[ThreadMessage]]:
        grouped: Dict[str, List[ThreadMessage]] = {thread_id: [] for thread_id in thread_ids}
        for chunk in _chunks(thread_ids, IN_QUERY_CHUNK):
            query = where_filter(self.messages_ref, "thread_id", "in", chunk)
            for doc in query.stream():
                message = ThreadMessage.from_firestore(doc.id, doc.to_dict() or {})
                if message.thread_id in grouped:
                    grouped[message.thread_id].append(message)
        return grouped

    def _fetch_labels(self, label_ids) -> Dict[str, Label]:
        if not label_ids:
            return {}
        refs = [self.labels_ref.document(label_id) for label_id in sorted(label_ids)]
        labels: Dict[str, Label] = {}
        for snapshot in self.client.get_all(refs):
            if snapshot.exists:
                labels[snapshot.id] = Label.from_firestore(snapshot.id, snapshot.to_dict() or {})
        return labels

    def list_labels(self, organization_id: str) -> List[Label]:
        """Return every label of an organization, enabled or not.

        Raises:
            ThreadRepositoryError: If the query fails.
        """
        try:
            query = where_filter(self.labels_ref, "organization_id", "==", organization_id)
            labels = [Label.from_firestore(doc.id, doc.to_dict() or {}) for doc in query.stream()]
        except Exception as e:
            raise ThreadRepositoryError(f"Failed to list labels for {organization_id}: {e}") from e
        return sorted(labels, key=lambda label: label.id)
