"""Support thread entity store.

Threads are the entities flowing through the enrichment pipeline. Each thread
carries its messages (rich-text JSON or plain text) and the organization labels
attached to it.

Modules:
    models: Thread, ThreadMessage, Label and ThreadStatus plus text helpers
    repository: Firestore reads for threads, messages and labels
"""

from src.threads.models import Label, Thread, ThreadMessage, ThreadStatus

__all__ = ["Label", "Thread", "ThreadMessage", "ThreadStatus"]
