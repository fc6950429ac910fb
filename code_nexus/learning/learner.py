"""
Incremental Learner - applies version-control changes to the project index.

Each call to process_changes() produces one LearningDelta that records what
changed in the index and why:

1. Deletions first (including the old side of renames). A path deleted in a
   batch is never re-analyzed in the same batch.
2. Every remaining file is analyzed once by the oracle. Failures for a
   single file are logged and the file is skipped.
3. Patterns are re-derived from the analyses of step 2.

Work is committed per file; a store failure marks the delta failed and
propagates without undoing files already written.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from ..config import NexusConfig
from ..core.models import (
    ChangeRecord,
    ChangeType,
    CommitInfo,
    ConceptRecord,
    DeltaStatus,
    FileIntelligence,
    LearningDelta,
    PatternRecord,
    TriggerType,
    derive_concept_id,
    utcnow,
)
from ..core.store import ProjectStore
from ..errors import QueueFullError, StoreError
from ..sources.git import changes_for_paths
from ..sources.oracle import AnalysisOracle, FileAnalysis, PatternCandidate
from .queue import LearningQueue, LearningTask

logger = logging.getLogger(__name__)

EVENTS = (
    "delta:start",
    "delta:complete",
    "delta:error",
    "queue:add",
    "queue:clear",
    "queue:complete",
)


class IncrementalLearner:
    """
    Keeps one repository's concept and pattern index current.

    Example:
        learner = IncrementalLearner(ProjectStore(repo), LexicalOracle(repo))
        delta = await learner.process_changes([
            ChangeRecord(ChangeType.MODIFIED, "src/app.ts"),
            ChangeRecord(ChangeType.DELETED, "src/old.ts"),
        ])

        # Or queue work and let the background drain loop batch it
        await learner.queue_learning(["a.ts", "b.ts"], priority=5)
        await learner.wait_until_idle()
    """

    def __init__(
        self,
        store: ProjectStore,
        oracle: AnalysisOracle,
        config: Optional[NexusConfig] = None,
    ):
        self.store = store
        self.oracle = oracle
        self.config = config or NexusConfig()
        self.learning = self.config.learning

        self._queue = LearningQueue(self.learning.max_pending_tasks)
        self._drain_task: Optional[asyncio.Task] = None
        self._current_delta: Optional[LearningDelta] = None
        self._last_completed: Optional[LearningDelta] = None
        self._deltas_processed = 0
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {e: [] for e in EVENTS}

    # =========================================================================
    # Notifications
    # =========================================================================

    def on(self, event: str, callback: Callable[[Any], None]) -> None:
        """Register a callback for one of EVENTS."""
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r}; expected one of {EVENTS}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, payload: Any = None) -> None:
        for callback in self._listeners[event]:
            try:
                callback(payload)
            except Exception as e:
                logger.warning(f"Listener for {event} raised {type(e).__name__}: {e}")

    # =========================================================================
    # Core: one change batch -> one delta
    # =========================================================================

    async def process_changes(
        self,
        changes: Sequence[ChangeRecord],
        commit_info: Optional[CommitInfo] = None,
        trigger: Union[TriggerType, str, None] = None,
    ) -> LearningDelta:
        """
        Apply a batch of changes and return its completed delta.

        Args:
            changes: File-level changes, in any order
            commit_info: Commit the changes belong to, if known
            trigger: What caused the run; defaults to commit when commit_info
                is given, manual otherwise

        Raises:
            StoreError: a store read or write failed; the delta is left failed
        """
        started = time.monotonic()
        if trigger is None:
            trigger = TriggerType.COMMIT if commit_info else TriggerType.MANUAL
        commit_id = commit_info.id if commit_info else _first(c.commit_id for c in changes)
        commit_message = commit_info.message if commit_info else _first(
            c.commit_message for c in changes
        )

        delta = LearningDelta(
            repository_id=self.store.repository_id,
            trigger_type=TriggerType(trigger),
            commit_id=commit_id,
            commit_message=commit_message,
            files_changed=list(OrderedDict.fromkeys(c.path for c in changes)),
        )
        self.store.save_delta(delta)
        delta.transition(DeltaStatus.PROCESSING)
        self.store.update_delta(delta)
        self._current_delta = delta
        self._emit("delta:start", delta)

        try:
            if changes:
                deleted = self._apply_deletions(changes, delta)
                analyses = await self._apply_modifications(changes, deleted, delta)
                self._update_patterns(analyses, delta)

            delta.duration_ms = int((time.monotonic() - started) * 1000)
            delta.transition(DeltaStatus.COMPLETED)
            self.store.update_delta(delta)
        except Exception as e:
            self._fail_delta(delta, e, started)
            raise
        finally:
            self._current_delta = None

        self._deltas_processed += 1
        self._last_completed = delta
        logger.info(
            f"Delta {delta.id[:8]} completed in {delta.duration_ms}ms: "
            f"concepts +{delta.concepts_added} ~{delta.concepts_modified} "
            f"-{delta.concepts_removed}, patterns +{delta.patterns_added} "
            f"~{delta.patterns_modified} ({len(delta.files_changed)} files)"
        )
        self._emit("delta:complete", delta)
        return delta

    def _fail_delta(self, delta: LearningDelta, error: Exception, started: float) -> None:
        delta.error_message = str(error) or type(error).__name__
        delta.duration_ms = int((time.monotonic() - started) * 1000)
        logger.error(f"Delta {delta.id[:8]} failed: {delta.error_message}")
        if not delta.status.is_terminal:
            delta.transition(DeltaStatus.FAILED)
            try:
                self.store.update_delta(delta)
            except StoreError as store_error:
                logger.error(f"Could not record failure of delta {delta.id[:8]}: {store_error}")
        self._emit("delta:error", delta)

    def _apply_deletions(self, changes: Sequence[ChangeRecord], delta: LearningDelta) -> Set[str]:
        """Soft-delete every concept of removed paths. Returns those paths."""
        deleted: Set[str] = set()
        for change in changes:
            if change.change_type is ChangeType.DELETED:
                deleted.add(change.path)
            elif change.change_type is ChangeType.RENAMED and change.old_path:
                deleted.add(change.old_path)

        for path in sorted(deleted):
            concept_ids = self._known_concept_ids(path)
            for concept_id in concept_ids:
                if self.store.mark_concept_deleted(concept_id, delta.commit_id):
                    delta.concepts_removed += 1
            self.store.delete_file_intelligence(path)
            logger.debug(f"Removed {len(concept_ids)} concepts of deleted file {path}")
        return deleted

    def _known_concept_ids(self, path: str) -> List[str]:
        """Active concept ids recorded for a file, file intelligence order first."""
        ids: List[str] = []
        info = self.store.get_file_intelligence(path)
        if info:
            ids.extend(info.concept_ids)
        ids.extend(c.id for c in self.store.get_concepts_by_file(path))
        return list(OrderedDict.fromkeys(ids))

    async def _apply_modifications(
        self,
        changes: Sequence[ChangeRecord],
        deleted: Set[str],
        delta: LearningDelta,
    ) -> List[FileAnalysis]:
        paths = OrderedDict.fromkeys(
            c.path for c in changes
            if c.change_type is not ChangeType.DELETED and c.path not in deleted
        )

        analyses: List[FileAnalysis] = []
        for path in paths:
            analysis = await self._analyze(path)
            if analysis is None:
                continue
            self._apply_analysis(path, analysis, delta)
            analyses.append(analysis)
        return analyses

    async def _analyze(self, path: str) -> Optional[FileAnalysis]:
        """Run the oracle for one file; None when it fails or times out."""
        try:
            call = self.oracle.analyze_file(path)
            if self.learning.oracle_timeout_s:
                return await asyncio.wait_for(call, self.learning.oracle_timeout_s)
            return await call
        except asyncio.TimeoutError:
            logger.warning(f"Skipping {path}: analysis exceeded {self.learning.oracle_timeout_s}s")
        except Exception as e:
            logger.warning(f"Skipping {path}: analysis failed ({type(e).__name__}: {e})")
        return None

    def _apply_analysis(self, path: str, analysis: FileAnalysis, delta: LearningDelta) -> None:
        """Reconcile one file's stored concepts with a fresh analysis."""
        stored_ids = set(self._known_concept_ids(path))
        now = utcnow()

        current_ids: List[str] = []
        for candidate in analysis.concepts:
            concept_id = derive_concept_id(path, candidate.concept_type, candidate.name)
            if concept_id in current_ids:
                continue
            current_ids.append(concept_id)

            existing = self.store.get_concept(concept_id)
            concept = ConceptRecord(
                id=concept_id,
                name=candidate.name,
                concept_type=candidate.concept_type,
                file_path=path,
                confidence_score=_clamp(candidate.confidence),
                relationships=dict(candidate.relationships),
                line_range=dict(candidate.line_range),
                created_at_commit=delta.commit_id,
                last_modified_commit=delta.commit_id,
                created_at=now,
                updated_at=now,
            )
            if existing is not None:
                concept.version = existing.version + 1
                concept.created_at = existing.created_at
                concept.created_at_commit = existing.created_at_commit

            if existing is not None and not existing.is_deleted:
                delta.concepts_modified += 1
            else:
                delta.concepts_added += 1
            self.store.upsert_concept(concept)

        for concept_id in stored_ids.difference(current_ids):
            if self.store.mark_concept_deleted(concept_id, delta.commit_id):
                delta.concepts_removed += 1

        self.store.save_file_intelligence(FileIntelligence(
            file_path=path,
            file_hash=analysis.file_hash,
            concept_ids=current_ids,
            patterns_used=[p.id for p in analysis.patterns],
            complexity=analysis.complexity,
            last_analyzed=now,
            last_learned_commit=delta.commit_id,
            last_learned_timestamp=delta.timestamp,
        ))
        logger.debug(f"Learned {path}: {len(current_ids)} concepts")

    def _update_patterns(self, analyses: List[FileAnalysis], delta: LearningDelta) -> None:
        """One insert or update per distinct pattern id seen in this batch."""
        merged: "OrderedDict[str, PatternCandidate]" = OrderedDict()
        for analysis in analyses:
            for candidate in analysis.patterns:
                if candidate.id in merged:
                    merged[candidate.id] = _merge_candidates(merged[candidate.id], candidate)
                else:
                    merged[candidate.id] = candidate

        max_examples = self.config.aggregation.max_examples
        nudge = self.config.aggregation.confidence_nudge
        now = utcnow()

        for pattern_id, candidate in merged.items():
            existing = self.store.get_pattern(pattern_id)
            if existing is None:
                self.store.save_pattern(PatternRecord(
                    pattern_id=pattern_id,
                    pattern_type=candidate.pattern_type,
                    content=dict(candidate.content),
                    contexts=_unique(candidate.contexts),
                    examples=_recent_examples([], candidate.examples, max_examples),
                    confidence=_clamp(candidate.confidence),
                    created_at=now,
                    last_seen=now,
                    last_updated_commit=delta.commit_id,
                ))
                delta.patterns_added += 1
                continue

            existing.frequency += 1
            existing.version += 1
            existing.confidence = _clamp(existing.confidence + nudge)
            existing.contexts = _unique(existing.contexts + candidate.contexts)
            existing.examples = _recent_examples(existing.examples, candidate.examples, max_examples)
            existing.last_seen = now
            existing.last_updated_commit = delta.commit_id
            self.store.save_pattern(existing)
            delta.patterns_modified += 1

    # =========================================================================
    # Change sources
    # =========================================================================

    async def learn_from_change_source(
        self,
        source,
        since: Optional[str] = None,
        trigger: Union[TriggerType, str, None] = None,
    ) -> LearningDelta:
        """
        Pull changes (since a ref, or uncommitted) from a change source and learn them.

        Committed changes carry the HEAD commit and default to a commit
        trigger. Uncommitted changes carry no commit and default to manual.

        Raises:
            ChangeSourceError: the source could not enumerate changes
        """
        changes = await source.list_changes(since)
        commit = await source.get_commit_info() if since else None
        logger.info(f"Learning {len(changes)} changes from change source (since={since})")
        return await self.process_changes(changes, commit, trigger)

    # =========================================================================
    # Queue
    # =========================================================================

    async def queue_learning(
        self,
        files: Sequence[str],
        trigger: Union[TriggerType, str] = TriggerType.MANUAL,
        commit_info: Optional[CommitInfo] = None,
        priority: int = 0,
    ) -> Optional[str]:
        """
        Queue files for learning.

        Waits for room when the queue is full and a drain is running.

        Returns:
            The task id, or None when learning is disabled

        Raises:
            QueueFullError: the queue is full and nothing is draining it
        """
        if not self.learning.enabled:
            logger.debug(f"Learning disabled, ignoring {len(files)} queued files")
            return None

        draining = self._drain_task is not None and not self._drain_task.done()
        if self._queue.is_full and not draining:
            if not self.learning.background_learning:
                raise QueueFullError(
                    f"Learning queue is full ({self._queue.max_pending} tasks); process it first"
                )
            self._ensure_drain()

        task = LearningTask(
            files=list(files),
            trigger=TriggerType(trigger),
            commit_info=commit_info,
            priority=priority,
        )
        await self._queue.put(task)
        logger.debug(f"Queued task {task.id[:8]}: {len(task.files)} files, priority {priority}")
        self._emit("queue:add", task)

        if self.learning.background_learning:
            self._ensure_drain()
        return task.id

    def _ensure_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())

    async def process_queue(self) -> None:
        """Drain the queue in the caller's task (used when background learning is off)."""
        if self._drain_task is not None and not self._drain_task.done():
            await self.wait_until_idle()
            return
        self._drain_task = asyncio.create_task(self._drain())
        await self.wait_until_idle()

    async def _drain(self) -> None:
        batch_size = self.learning.batch_size
        pause = self.learning.queue_timeout_ms / 1000

        while True:
            task = self._queue.pop()
            if task is None:
                break

            batch, remainder = task.files[:batch_size], task.files[batch_size:]
            if remainder:
                self._queue.push_front(replace(task, files=remainder))

            try:
                await self.process_changes(
                    changes_for_paths(batch, task.commit_info),
                    task.commit_info,
                    task.trigger,
                )
            except Exception as e:
                logger.error(f"Queued task {task.id[:8]} failed: {type(e).__name__}: {e}")

            if len(self._queue) and pause:
                await asyncio.sleep(pause)

        self._emit("queue:complete", None)

    def clear_queue(self) -> int:
        """Drop pending tasks; a batch already in progress still finishes."""
        dropped = self._queue.clear()
        logger.info(f"Cleared {dropped} pending learning tasks")
        self._emit("queue:clear", dropped)
        return dropped

    async def wait_until_idle(self) -> None:
        """Wait until the drain loop has emptied the queue."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def stop(self) -> None:
        """Clear pending work and wait for the in-flight batch to finish."""
        self.clear_queue()
        await self.wait_until_idle()

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_recent_deltas(self, limit: int = 10, since_timestamp=None) -> List[LearningDelta]:
        return self.store.get_recent_deltas(limit=limit, since=since_timestamp)

    def get_learning_status(self) -> Dict[str, Any]:
        return {
            "is_learning": self._current_delta is not None,
            "current_delta": self._current_delta.to_dict() if self._current_delta else None,
            "queue_length": len(self._queue),
            "pending_files": self._queue.pending_files,
            "total_deltas_processed": self._deltas_processed,
            "last_completed_delta": (
                self._last_completed.to_dict() if self._last_completed else None
            ),
        }

    def get_statistics(self) -> Dict[str, Any]:
        return self.store.get_delta_statistics()


def _first(values) -> Optional[str]:
    return next((v for v in values if v), None)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _unique(items: List[str]) -> List[str]:
    return list(OrderedDict.fromkeys(items))


def _recent_examples(old: List[Dict[str, Any]], new: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    """Append unseen examples, keeping the most recent `limit`."""
    examples = list(old)
    for example in new:
        if example not in examples:
            examples.append(example)
    return examples[-limit:] if limit else []


def _merge_candidates(a: PatternCandidate, b: PatternCandidate) -> PatternCandidate:
    return replace(
        a,
        confidence=max(a.confidence, b.confidence),
        contexts=_unique(a.contexts + b.contexts),
        examples=a.examples + [e for e in b.examples if e not in a.examples],
    )
