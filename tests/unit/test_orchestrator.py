"""Unit tests for the turn-based orchestrator.

Uses stub processors, the fake Firestore client and real repositories.
"""

import threading
import time

import pytest

from conftest import seed_thread

from src.common.locks import KeyedLock
from src.pipeline.idempotency import IdempotencyStore
from src.pipeline.models import (
    EntityStatus,
    JobStatus,
    PipelineJobOptions,
    ProcessorError,
    ProcessorSkipped,
    ProcessorSuccess,
    SkipReason,
)
from src.pipeline.orchestrator import PipelineOrchestrator, StatusFold
from src.pipeline.persistence import JobRepository
from src.pipeline.registry import ProcessorDefinition, ProcessorRegistry
from src.threads.repository import ThreadRepository


class RecordingProcessor(ProcessorDefinition):
    """Returns its thread name as output; can be told to fail for some ids."""

    def __init__(self, name, dependencies=(), fail_for=(), raise_for=(), delay=0.0):
        self.name = name
        self.dependencies = tuple(dependencies)
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.delay = delay
        self.calls = []
        self.seen_upstream = {}
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def compute_hash(self, execution):
        return f"{self.name}:{execution.thread.name}"

    def execute(self, execution):
        with self._lock:
            self.calls.append(execution.entity_id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            for dep in self.dependencies:
                self.seen_upstream[(dep, execution.entity_id)] = execution.context.get_output(dep, execution.entity_id)
            if execution.entity_id in self.raise_for:
                raise RuntimeError("boom")
            if execution.entity_id in self.fail_for:
                return ProcessorError(execution.entity_id, "failed on purpose")
            return ProcessorSuccess(execution.entity_id, f"{self.name}({execution.thread.name})")
        finally:
            with self._lock:
                self.active -= 1


def build(firestore_client, firestore_config, *processors, keyed_lock=None):
    registry = ProcessorRegistry()
    for processor in processors:
        registry.register(processor)
    return PipelineOrchestrator(
        registry=registry,
        thread_repository=ThreadRepository(client=firestore_client, config=firestore_config),
        idempotency_store=IdempotencyStore(client=firestore_client, config=firestore_config),
        job_repository=JobRepository(client=firestore_client, config=firestore_config),
        keyed_lock=keyed_lock,
    )


def seed(firestore_client, *thread_ids):
    for thread_id in thread_ids:
        seed_thread(firestore_client, thread_id, name=f"name-{thread_id}", messages=["hello"])


def test_missing_thread_fails_and_others_complete(firestore_client, firestore_config):
    seed(firestore_client, "t1", "t3")
    summarize = RecordingProcessor("summarize")
    orchestrator = build(firestore_client, firestore_config, summarize)

    result = orchestrator.execute(["t1", "t2", "t3"])

    assert result.status == JobStatus.COMPLETED
    assert result.summary.total_entities == 3
    assert result.summary.processed_entities == 2
    assert result.summary.failed_entities == 1
    assert result.entity_statuses == {
        "t1": EntityStatus.PROCESSED,
        "t2": EntityStatus.FAILED,
        "t3": EntityStatus.PROCESSED,
    }
    assert sorted(summarize.calls) == ["t1", "t3"]

    record = orchestrator.job_repository.get_job(result.job_id)
    assert record.status == JobStatus.COMPLETED
    assert record.summary["failed_entities"] == 1
    assert record.metadata["thread_count"] == 3
    assert record.started_at is not None
    assert record.completed_at is not None


def test_duplicate_ids_are_processed_once(firestore_client, firestore_config):
    seed(firestore_client, "t1")
    summarize = RecordingProcessor("summarize")
    result = build(firestore_client, firestore_config, summarize).execute(["t1", "t1"])

    assert summarize.calls == ["t1"]
    assert result.summary.total_entities == 1


def test_downstream_reads_upstream_output(firestore_client, firestore_config):
    seed(firestore_client, "t1")
    summarize = RecordingProcessor("summarize")
    embed = RecordingProcessor("embed", ["summarize"])
    result = build(firestore_client, firestore_config, summarize, embed).execute(["t1"])

    assert embed.seen_upstream[("summarize", "t1")] == "summarize(name-t1)"
    assert [turn.processors[0].processor for turn in result.turns] == ["summarize", "embed"]
    assert result.summary.completed_processors == 2


def test_rerun_with_unchanged_content_is_skipped(firestore_client, firestore_config):
    seed(firestore_client, "t1", "t2")
    summarize = RecordingProcessor("summarize")
    orchestrator = build(firestore_client, firestore_config, summarize)

    orchestrator.execute(["t1", "t2"])
    second = orchestrator.execute(["t1", "t2"])

    assert sorted(summarize.calls) == ["t1", "t2"]
    assert second.summary.skipped_entities == 2
    assert second.turns[0].processors[0].skipped == 2


def test_changed_content_reruns(firestore_client, firestore_config):
    seed(firestore_client, "t1")
    summarize = RecordingProcessor("summarize")
    orchestrator = build(firestore_client, firestore_config, summarize)
    orchestrator.execute(["t1"])

    seed_thread(firestore_client, "t1", name="renamed", messages=["hello"])
    result = orchestrator.execute(["t1"])

    assert summarize.calls == ["t1", "t1"]
    assert result.entity_statuses["t1"] == EntityStatus.PROCESSED


def test_failed_results_do_not_store_keys(firestore_client, firestore_config):
    seed(firestore_client, "t1")
    summarize = RecordingProcessor("summarize", fail_for={"t1"})
    orchestrator = build(firestore_client, firestore_config, summarize)

    orchestrator.execute(["t1"])
    orchestrator.execute(["t1"])

    assert summarize.calls == ["t1", "t1"]


def capture_skips(orchestrator):
    captured = {}
    original_skip = orchestrator._skip

    def spy(processor, context, entity_id, reason):
        captured[processor.name] = reason
        return original_skip(processor, context, entity_id, reason)

    orchestrator._skip = spy
    return captured


def test_dependency_skip_propagates_with_reason(firestore_client, firestore_config):
    seed(firestore_client, "t1")
    summarize = RecordingProcessor("summarize")
    embed = RecordingProcessor("embed", ["summarize"])
    orchestrator = build(firestore_client, firestore_config, summarize, embed)
    orchestrator.execute(["t1"])

    captured = capture_skips(orchestrator)
    result = orchestrator.execute(["t1"])

    assert captured == {"summarize": SkipReason.IDEMPOTENT, "embed": SkipReason.DEPENDENCIES_SKIPPED}
    assert summarize.calls == ["t1"]
    assert embed.calls == ["t1"]
    assert result.entity_statuses["t1"] == EntityStatus.SKIPPED


@pytest.mark.parametrize("keyed_lock", [None, KeyedLock()], ids=["batched", "keyed-lock"])
def test_failed_downstream_is_retried_on_redelivery(firestore_client, firestore_config, keyed_lock):
    seed(firestore_client, "t1", "t2")
    summarize = RecordingProcessor("summarize")
    embed = RecordingProcessor("embed", ["summarize"], fail_for={"t1"})
    orchestrator = build(firestore_client, firestore_config, summarize, embed, keyed_lock=keyed_lock)

    first = orchestrator.execute(["t1", "t2"])
    assert first.turns[1].processors[0].failed == 1

    embed.fail_for.clear()
    second = orchestrator.execute(["t1", "t2"])

    assert embed.calls.count("t1") == 2
    assert embed.calls.count("t2") == 1
    assert summarize.calls.count("t1") == 2
    assert embed.seen_upstream[("summarize", "t1")] == "summarize(name-t1)"
    assert second.entity_statuses == {"t1": EntityStatus.PROCESSED, "t2": EntityStatus.SKIPPED}


def test_new_processor_runs_on_existing_threads(firestore_client, firestore_config):
    seed(firestore_client, "t1")
    summarize = RecordingProcessor("summarize")
    embed = RecordingProcessor("embed", ["summarize"])
    orchestrator = build(firestore_client, firestore_config, summarize, embed)
    orchestrator.execute(["t1"])

    late = RecordingProcessor("late", ["embed"])
    orchestrator.registry.register(late)
    captured = capture_skips(orchestrator)
    result = orchestrator.execute(["t1"])

    assert late.calls == ["t1"]
    assert late.seen_upstream[("embed", "t1")] == "embed(name-t1)"
    assert summarize.calls == ["t1", "t1"]
    assert embed.calls == ["t1", "t1"]
    assert captured == {}
    assert result.entity_statuses["t1"] == EntityStatus.PROCESSED


def test_upstream_self_skip_without_prior_run_is_reported(firestore_client, firestore_config):
    seed(firestore_client, "t1")

    class NothingToDo(RecordingProcessor):
        def execute(self, execution):
            self.calls.append(execution.entity_id)
            return ProcessorSkipped(execution.entity_id)

    summarize = NothingToDo("summarize")
    embed = RecordingProcessor("embed", ["summarize"])
    orchestrator = build(firestore_client, firestore_config, summarize, embed)
    captured = capture_skips(orchestrator)

    result = orchestrator.execute(["t1"])

    assert summarize.calls == ["t1"]
    assert embed.calls == []
    assert captured == {"embed": SkipReason.DEPENDENCIES_SKIPPED_NO_PRIOR_RUN}
    assert result.entity_statuses["t1"] == EntityStatus.SKIPPED


def test_invalidated_downstream_key_reruns_the_chain(firestore_client, firestore_config):
    seed(firestore_client, "t1")
    summarize = RecordingProcessor("summarize")
    embed = RecordingProcessor("embed", ["summarize"])
    orchestrator = build(firestore_client, firestore_config, summarize, embed)
    orchestrator.execute(["t1"])

    orchestrator.idempotency_store.invalidate(embed.get_idempotency_key("t1"))
    result = orchestrator.execute(["t1"])

    assert embed.calls == ["t1", "t1"]
    assert result.entity_statuses["t1"] == EntityStatus.PROCESSED


def test_exception_is_isolated_to_one_thread(firestore_client, firestore_config):
    seed(firestore_client, "t1", "t2")
    summarize = RecordingProcessor("summarize", raise_for={"t1"})
    embed = RecordingProcessor("embed", ["summarize"])
    result = build(firestore_client, firestore_config, summarize, embed).execute(["t1", "t2"])

    assert result.status == JobStatus.COMPLETED
    assert result.entity_statuses == {"t1": EntityStatus.FAILED, "t2": EntityStatus.PROCESSED}
    assert embed.calls == ["t2"]

    embed_run = result.turns[1].processors[0]
    assert embed_run.failed == 1
    assert "summarize" in embed_run.errors["t1"]
    assert result.turns[0].processors[0].errors["t1"] == "boom"


def test_hash_failure_is_a_per_thread_error(firestore_client, firestore_config):
    seed(firestore_client, "t1", "t2")

    class BadHash(RecordingProcessor):
        def compute_hash(self, execution):
            if execution.entity_id == "t1":
                raise ValueError("cannot hash")
            return "ok"

    processor = BadHash("summarize")
    result = build(firestore_client, firestore_config, processor).execute(["t1", "t2"])

    assert processor.calls == ["t2"]
    assert result.entity_statuses["t1"] == EntityStatus.FAILED


def test_fetch_failure_fails_the_job(firestore_client, firestore_config):
    seed(firestore_client, "t1")
    orchestrator = build(firestore_client, firestore_config, RecordingProcessor("summarize"))
    firestore_client.failing.add("get_all")

    result = orchestrator.execute(["t1", "t2"])

    assert result.status == JobStatus.FAILED
    assert result.summary.failed_entities == 2
    assert "Firestore unavailable" in result.error
    record = orchestrator.job_repository.get_job(result.job_id)
    assert record.status == JobStatus.FAILED
    assert record.error == result.error


def test_no_threads_found_runs_no_turns(firestore_client, firestore_config):
    summarize = RecordingProcessor("summarize")
    result = build(firestore_client, firestore_config, summarize).execute(["nope"])

    assert result.status == JobStatus.COMPLETED
    assert result.turns == []
    assert result.entity_statuses == {"nope": EntityStatus.FAILED}
    assert summarize.calls == []


def test_window_concurrency_is_bounded(firestore_client, firestore_config):
    ids = [f"t{i}" for i in range(6)]
    seed(firestore_client, *ids)
    summarize = RecordingProcessor("summarize", delay=0.05)
    orchestrator = build(firestore_client, firestore_config, summarize)

    result = orchestrator.execute(ids, PipelineJobOptions(concurrency=2))

    assert result.summary.processed_entities == 6
    assert 1 <= summarize.max_active <= 2


def test_keyed_lock_path_checks_and_stores_per_key(firestore_client, firestore_config):
    seed(firestore_client, "t1", "t2")
    lock = KeyedLock()
    summarize = RecordingProcessor("summarize")
    orchestrator = build(firestore_client, firestore_config, summarize, keyed_lock=lock)

    first = orchestrator.execute(["t1", "t2"])
    second = orchestrator.execute(["t1", "t2"])

    assert first.summary.processed_entities == 2
    assert second.summary.skipped_entities == 2
    assert sorted(summarize.calls) == ["t1", "t2"]
    assert len(lock) == 0


def test_status_fold_precedence():
    fold = StatusFold(["a", "b", "c", "d"])
    fold.record(ProcessorSuccess("a"))
    fold.record(ProcessorSkipped("a"))
    fold.record(ProcessorError("a", "x"))
    fold.record(ProcessorError("b", "x"))
    fold.record(ProcessorSkipped("b"))
    fold.record(ProcessorError("c", "x"))

    assert fold.statuses() == {
        "a": EntityStatus.PROCESSED,
        "b": EntityStatus.SKIPPED,
        "c": EntityStatus.FAILED,
        "d": EntityStatus.FAILED,
    }
