"""Turn-based pipeline orchestrator.

Runs every registered processor over a batch of threads:

1. Persist a job record (pending -> running).
2. Fetch the threads; ids that cannot be fetched fail immediately.
3. Resolve the registry into turns of mutually independent processors.
   Walking the plan backwards, any thread whose downstream processor has no
   usable stored hash forces its upstream chain to run again, so a failed or
   newly added processor gets fresh inputs instead of a dependency skip.
4. Per turn, run all processors side by side. Per processor, bulk-check
   idempotency keys, then execute the remaining threads in fixed windows of
   ``concurrency`` threads (windows run one after another), and store the
   successful keys in one batch once the processor settles.
5. Fold every result into a per-thread status with precedence
   processed > skipped > failed, then persist the summary.

Errors for one (processor, thread) pair become ``ProcessorError`` results and
never stop sibling threads or later turns. Only an exception escaping steps
2-5 (e.g. the batch fetch failing) fails the job.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from src.common.locks import KeyedLock
from src.common.logging import log_decision, log_error
from src.pipeline.context import JobContext
from src.pipeline.idempotency import IdempotencyStore
from src.pipeline.models import (
    EntityStatus,
    JobStatus,
    PipelineExecutionResult,
    PipelineJobOptions,
    PipelineRunSummary,
    ProcessorError,
    ProcessorResult,
    ProcessorRunSummary,
    ProcessorSkipped,
    ResultOutcome,
    SkipReason,
    TurnSummary,
)
from src.pipeline.persistence import JobRepository
from src.pipeline.registry import ProcessorDefinition, ProcessorExecution, ProcessorRegistry
from src.threads.repository import ThreadRepository

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5
MAX_ERROR_LENGTH = 500

_PRECEDENCE = {
    EntityStatus.FAILED: 0,
    EntityStatus.SKIPPED: 1,
    EntityStatus.PROCESSED: 2,
}

_OUTCOME_STATUS = {
    ResultOutcome.SUCCESS: EntityStatus.PROCESSED,
    ResultOutcome.SKIPPED: EntityStatus.SKIPPED,
    ResultOutcome.ERROR: EntityStatus.FAILED,
}


class StatusFold:
    """Per-thread status where a weaker signal never replaces a stronger one."""

    def __init__(self, entity_ids: List[str]):
        self._statuses: Dict[str, Optional[EntityStatus]] = {entity_id: None for entity_id in entity_ids}

    def record(self, result: ProcessorResult) -> None:
        incoming = _OUTCOME_STATUS[result.outcome]
        current = self._statuses.get(result.entity_id)
        if current is None or _PRECEDENCE[incoming] > _PRECEDENCE[current]:
            self._statuses[result.entity_id] = incoming

    def statuses(self) -> Dict[str, EntityStatus]:
        return {entity_id: status or EntityStatus.FAILED for entity_id, status in self._statuses.items()}


@dataclass
class _WorkItem:
    entity_id: str
    execution: ProcessorExecution
    key: str
    content_hash: str
    forced: bool = False


class PipelineOrchestrator:
    """Executes a processor registry over batches of threads."""

    def __init__(
        self,
        registry: ProcessorRegistry,
        thread_repository: ThreadRepository,
        idempotency_store: IdempotencyStore,
        job_repository: JobRepository,
        keyed_lock: Optional[KeyedLock] = None,
    ):
        self.registry = registry
        self.thread_repository = thread_repository
        self.idempotency_store = idempotency_store
        self.job_repository = job_repository
        self.keyed_lock = keyed_lock

    def execute(
        self,
        thread_ids: List[str],
        options: Optional[PipelineJobOptions] = None,
    ) -> PipelineExecutionResult:
        """Run the full pipeline for ``thread_ids`` and return the job outcome.

        Raises:
            JobRepositoryError: If the job record cannot be created.
        """
        options = options or PipelineJobOptions(concurrency=DEFAULT_CONCURRENCY)
        entity_ids = list(dict.fromkeys(thread_ids))
        started = time.monotonic()

        job_id = self.job_repository.create_job(entity_ids, options)
        self.job_repository.update_status(job_id, JobStatus.RUNNING, {"concurrency": options.concurrency})
        logger.info(
            "Pipeline job started",
            extra={"job_id": job_id, "thread_count": len(entity_ids), "concurrency": options.concurrency},
        )

        try:
            result = self._run(job_id, entity_ids, options, started)
        except Exception as e:
            log_error(logger, "Pipeline job failed", error=e, job_id=job_id)
            self.job_repository.fail_job(job_id, str(e))
            return PipelineExecutionResult(
                job_id=job_id,
                status=JobStatus.FAILED,
                summary=PipelineRunSummary(
                    total_entities=len(entity_ids),
                    failed_entities=len(entity_ids),
                    total_processors=len(self.registry),
                    duration_ms=_elapsed_ms(started),
                ),
                entity_statuses={entity_id: EntityStatus.FAILED for entity_id in entity_ids},
                error=str(e),
            )

        self.job_repository.complete_job(job_id, result)
        logger.info(
            "Pipeline job completed",
            extra={"job_id": job_id, **result.summary.to_dict()},
        )
        return result

    def _run(
        self,
        job_id: str,
        entity_ids: List[str],
        options: PipelineJobOptions,
        started: float,
    ) -> PipelineExecutionResult:
        fold = StatusFold(entity_ids)

        threads = self.thread_repository.fetch_many(entity_ids)
        for entity_id in entity_ids:
            if entity_id not in threads:
                logger.warning("Thread not found", extra={"job_id": job_id, "thread_id": entity_id})
                fold.record(ProcessorError(entity_id, "Thread not found"))

        plan = self.registry.resolve_execution_order()
        found_ids = [entity_id for entity_id in entity_ids if entity_id in threads]
        context = JobContext(job_id, found_ids, options, threads)

        turns: List[TurnSummary] = []
        completed_processors = 0
        if found_ids:
            forced = self._plan_forced_runs(plan, found_ids)
            for index, turn in enumerate(plan):
                summary = self._run_turn(index, turn, context, fold, forced)
                turns.append(summary)
                completed_processors += len(turn)
        else:
            logger.warning("No threads fetched, skipping all turns", extra={"job_id": job_id})

        statuses = fold.statuses()
        summary = PipelineRunSummary(
            total_entities=len(entity_ids),
            processed_entities=sum(1 for s in statuses.values() if s == EntityStatus.PROCESSED),
            skipped_entities=sum(1 for s in statuses.values() if s == EntityStatus.SKIPPED),
            failed_entities=sum(1 for s in statuses.values() if s == EntityStatus.FAILED),
            total_processors=len(self.registry),
            completed_processors=completed_processors,
            duration_ms=_elapsed_ms(started),
        )
        return PipelineExecutionResult(
            job_id=job_id,
            status=JobStatus.COMPLETED,
            summary=summary,
            turns=turns,
            entity_statuses=statuses,
        )

    def _run_turn(
        self,
        index: int,
        turn: List[str],
        context: JobContext,
        fold: StatusFold,
        forced: Dict[str, Set[str]],
    ) -> TurnSummary:
        started = time.monotonic()
        processors = [self.registry.get(name) for name in turn]

        with ThreadPoolExecutor(max_workers=len(processors), thread_name_prefix=f"turn-{index}") as pool:
            futures = [
                pool.submit(self._run_processor, processor, context, forced.get(processor.name, set()))
                for processor in processors
            ]
            outcomes = [future.result() for future in futures]

        summaries: List[ProcessorRunSummary] = []
        for processor, (results, duration_ms) in zip(processors, outcomes):
            run = ProcessorRunSummary(processor=processor.name, duration_ms=duration_ms)
            for result in results:
                fold.record(result)
                if result.outcome == ResultOutcome.SUCCESS:
                    run.processed += 1
                elif result.outcome == ResultOutcome.SKIPPED:
                    run.skipped += 1
                else:
                    run.failed += 1
                    run.errors[result.entity_id] = result.error[:MAX_ERROR_LENGTH]
            logger.info(
                "Processor finished",
                extra={
                    "job_id": context.job_id,
                    "turn": index,
                    "processor": run.processor,
                    "processed": run.processed,
                    "skipped": run.skipped,
                    "failed": run.failed,
                    "duration_ms": run.duration_ms,
                },
            )
            summaries.append(run)

        return TurnSummary(turn=index, processors=summaries, duration_ms=_elapsed_ms(started))

    def _run_processor(
        self,
        processor: ProcessorDefinition,
        context: JobContext,
        forced: Set[str],
    ) -> Tuple[List[ProcessorResult], int]:
        """Run one processor over every thread in the context, results in input order.

        Threads in ``forced`` execute even when their stored hash matches.
        """
        started = time.monotonic()
        results: Dict[str, ProcessorResult] = {}
        candidates = self._gate_on_dependencies(processor, context, results)

        items: List[_WorkItem] = []
        for entity_id in candidates:
            execution = ProcessorExecution(context=context, thread=context.threads[entity_id], entity_id=entity_id)
            try:
                content_hash = processor.compute_hash(execution)
            except Exception as e:
                log_error(logger, "Hash computation failed", thread_id=entity_id, error=e, processor=processor.name)
                results[entity_id] = ProcessorError(entity_id, f"Hash computation failed: {e}")
                continue
            items.append(
                _WorkItem(
                    entity_id,
                    execution,
                    processor.get_idempotency_key(entity_id),
                    content_hash,
                    forced=entity_id in forced,
                )
            )

        if self.keyed_lock is not None:
            results.update(self._execute_windows(processor, items, context, self._execute_locked))
        else:
            decisions = self.idempotency_store.batch_check(
                [(item.key, item.content_hash) for item in items if not item.forced]
            )
            pending: List[_WorkItem] = []
            for item in items:
                if decisions.get(item.key):
                    results[item.entity_id] = self._skip(processor, context, item.entity_id, SkipReason.IDEMPOTENT)
                else:
                    pending.append(item)

            executed = self._execute_windows(processor, pending, context, self._execute_one)
            results.update(executed)
            stored = [
                (item.key, item.content_hash)
                for item in pending
                if executed[item.entity_id].outcome == ResultOutcome.SUCCESS
            ]
            if stored:
                self.idempotency_store.batch_store(stored)

        ordered = [results[entity_id] for entity_id in context.entity_ids if entity_id in results]
        return ordered, _elapsed_ms(started)

    def _plan_forced_runs(self, plan: List[List[str]], entity_ids: List[str]) -> Dict[str, Set[str]]:
        """Threads each processor must execute regardless of its stored hash.

        A processor without a usable stored hash for a thread (it failed last
        time, was invalidated, or is newly registered) needs its upstream
        outputs in the job context, so every processor above it in the chain
        runs again for that thread. One lookup per dependent processor.
        """
        forced: Dict[str, Set[str]] = {name: set() for turn in plan for name in turn}
        for turn in reversed(plan):
            for name in turn:
                processor = self.registry.get(name)
                if not processor.dependencies:
                    continue
                keys = {entity_id: processor.get_idempotency_key(entity_id) for entity_id in entity_ids}
                stored = self.idempotency_store.batch_check_stored(list(keys.values()))
                needs = forced[name] | {entity_id for entity_id in entity_ids if not stored.get(keys[entity_id])}
                for dep in processor.dependencies:
                    forced[dep] |= needs

        for name, entity_ids_to_force in forced.items():
            if entity_ids_to_force:
                logger.info(
                    "Re-running upstream processor for threads missing downstream results",
                    extra={"processor": name, "thread_count": len(entity_ids_to_force)},
                )
        return forced

    def _gate_on_dependencies(
        self,
        processor: ProcessorDefinition,
        context: JobContext,
        results: Dict[str, ProcessorResult],
    ) -> List[str]:
        """Resolve threads whose upstream processors skipped or failed; return the rest."""
        if not processor.dependencies:
            return list(context.entity_ids)

        runnable: List[str] = []
        upstream_skipped: List[str] = []
        for entity_id in context.entity_ids:
            if context.were_all_skipped(processor.dependencies, entity_id):
                upstream_skipped.append(entity_id)
                continue
            missing = [
                dep
                for dep in processor.dependencies
                if not context.has_output(dep, entity_id) and not context.was_skipped(dep, entity_id)
            ]
            if missing:
                results[entity_id] = ProcessorError(
                    entity_id, f"Dependency {', '.join(missing)} produced no output"
                )
                continue
            runnable.append(entity_id)

        if upstream_skipped:
            keys = {entity_id: processor.get_idempotency_key(entity_id) for entity_id in upstream_skipped}
            prior_runs = self.idempotency_store.batch_check_exists(list(keys.values()))
            for entity_id in upstream_skipped:
                reason = (
                    SkipReason.DEPENDENCIES_SKIPPED
                    if prior_runs.get(keys[entity_id])
                    else SkipReason.DEPENDENCIES_SKIPPED_NO_PRIOR_RUN
                )
                results[entity_id] = self._skip(processor, context, entity_id, reason)

        return runnable

    def _execute_windows(self, processor, items: List[_WorkItem], context: JobContext, runner) -> Dict[str, ProcessorResult]:
        results: Dict[str, ProcessorResult] = {}
        if not items:
            return results

        concurrency = max(1, context.options.concurrency)
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=processor.name) as pool:
            for start in range(0, len(items), concurrency):
                window = items[start : start + concurrency]
                futures = [pool.submit(runner, processor, item) for item in window]
                for item, future in zip(window, futures):
                    results[item.entity_id] = future.result()
        return results

    def _execute_one(self, processor: ProcessorDefinition, item: _WorkItem) -> ProcessorResult:
        try:
            result = processor.execute(item.execution)
        except Exception as e:
            log_error(logger, "Processor raised", thread_id=item.entity_id, error=e, processor=processor.name)
            return ProcessorError(item.entity_id, str(e) or type(e).__name__)

        if result.outcome == ResultOutcome.SUCCESS and result.data is not None:
            item.execution.context.set_output(processor.name, item.entity_id, result.data)
        elif result.outcome == ResultOutcome.SKIPPED:
            item.execution.context.mark_skipped(processor.name, item.entity_id)
        return result

    def _execute_locked(self, processor: ProcessorDefinition, item: _WorkItem) -> ProcessorResult:
        """Check, execute and store under the per-key lock."""
        with self.keyed_lock.hold(item.key):
            if not item.forced and self.idempotency_store.check(item.key, item.content_hash):
                return self._skip(processor, item.execution.context, item.entity_id, SkipReason.IDEMPOTENT)
            result = self._execute_one(processor, item)
            if result.outcome == ResultOutcome.SUCCESS:
                self.idempotency_store.store(item.key, item.content_hash)
            return result

    @staticmethod
    def _skip(processor: ProcessorDefinition, context: JobContext, entity_id: str, reason: SkipReason) -> ProcessorSkipped:
        context.mark_skipped(processor.name, entity_id)
        log_decision(
            logger,
            thread_id=entity_id,
            action=processor.name,
            outcome="skipped",
            reason=reason.value,
            job_id=context.job_id,
        )
        return ProcessorSkipped(entity_id, reason)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
