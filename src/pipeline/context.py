"""Job-scoped store of processor outputs and skip markers.

One ``JobContext`` lives for a single orchestrator run. Downstream processors
read upstream outputs for the same thread through it instead of recomputing
them. Processors of a turn and threads of a window run on worker threads, so
every access goes through one lock.
"""

import threading
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from src.pipeline.models import PipelineJobOptions
from src.threads.models import Thread


def output_key(processor: str, entity_id: str) -> str:
    return f"{processor}:{entity_id}"


class JobContext:
    def __init__(
        self,
        job_id: str,
        entity_ids: List[str],
        options: Optional[PipelineJobOptions] = None,
        threads: Optional[Dict[str, Thread]] = None,
    ):
        self.job_id = job_id
        self.entity_ids = list(entity_ids)
        self.options = options or PipelineJobOptions()
        self.threads: Dict[str, Thread] = dict(threads or {})
        self._outputs: Dict[str, Any] = {}
        self._skipped: Set[str] = set()
        self._lock = threading.Lock()

    def set_output(self, processor: str, entity_id: str, value: Any) -> None:
        with self._lock:
            self._outputs[output_key(processor, entity_id)] = value

    def get_output(self, processor: str, entity_id: str) -> Optional[Any]:
        with self._lock:
            return self._outputs.get(output_key(processor, entity_id))

    def has_output(self, processor: str, entity_id: str) -> bool:
        with self._lock:
            return output_key(processor, entity_id) in self._outputs

    def get_all_outputs(self, processor: str) -> Dict[str, Any]:
        """Every output of ``processor`` in this job, keyed by entity id."""
        prefix = f"{processor}:"
        with self._lock:
            return {key[len(prefix):]: value for key, value in self._outputs.items() if key.startswith(prefix)}

    def output_keys(self) -> List[Tuple[str, str]]:
        with self._lock:
            keys = list(self._outputs)
        return [tuple(key.split(":", 1)) for key in keys]

    def mark_skipped(self, processor: str, entity_id: str) -> None:
        with self._lock:
            self._skipped.add(output_key(processor, entity_id))

    def was_skipped(self, processor: str, entity_id: str) -> bool:
        with self._lock:
            return output_key(processor, entity_id) in self._skipped

    def were_all_skipped(self, processors: Iterable[str], entity_id: str) -> bool:
        """True when every listed processor skipped the entity; False for no processors."""
        names = list(processors)
        if not names:
            return False
        with self._lock:
            return all(output_key(name, entity_id) in self._skipped for name in names)
