from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from fractions import Fraction
from typing import Any

from caseflow import state_machine
from caseflow.case_model import Priority, QcStatus, Stage
from caseflow.errors import ApiError
from caseflow.repositories import CaseQuery
from caseflow.state_machine import Actor
from caseflow.store import InMemoryStore

logger = logging.getLogger(__name__)


def keep_for_qc(index: int, percentage: float) -> bool:
    """Round-robin selection: position ``index`` is kept when the running quota ticks over."""
    share = Fraction(str(percentage)) / 100
    return int((index + 1) * share) > int(index * share)


class BatchSamplingRouter:
    """Split classified cases awaiting QC into a manual-QC subset and an auto-passed remainder.

    Only normal-priority cases are sampled; high-priority cases (re-classified
    after a rejection, or revoked) always wait for a human QC reviewer.
    """

    _org_locks: dict[str, threading.Lock] = {}
    _org_locks_guard = threading.Lock()

    def __init__(self, store: InMemoryStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def _lock_for(cls, tenant_id: str) -> threading.Lock:
        with cls._org_locks_guard:
            lock = cls._org_locks.get(tenant_id)
            if lock is None:
                lock = threading.Lock()
                cls._org_locks[tenant_id] = lock
            return lock

    def run_batch(self, *, tenant_id: str, actor: Actor, trace_id: str | None = None) -> dict[str, Any]:
        with self._lock_for(tenant_id):
            return self._run_locked(tenant_id=tenant_id, actor=actor, trace_id=trace_id)

    def _run_locked(self, *, tenant_id: str, actor: Actor, trace_id: str | None) -> dict[str, Any]:
        pipeline = self._store.get_pipeline_config(tenant_id=tenant_id)
        pool = self._store.query_cases(
            tenant_id=tenant_id,
            query=CaseQuery(
                stages=(Stage.QC_TRIAGE,),
                qc_statuses=(QcStatus.PENDING,),
                priorities=(Priority.NORMAL,),
                unassigned=True,
                batch_unset=True,
                order="created",
                limit=pipeline.batch_max_size,
            ),
        )
        batch_id = f"batch_{uuid.uuid4().hex[:12]}"
        now = self._clock()
        summary: dict[str, Any] = {
            "batchId": batch_id,
            "autoPassed": 0,
            "queuedForQC": 0,
            "skipped": 0,
            "total": len(pool),
            "details": [],
        }
        for index, item in enumerate(pool):
            kept = keep_for_qc(index, pipeline.qc_sampling_percentage)
            try:
                if kept:
                    updated = state_machine.mark_queued_for_qc(item.case, actor=actor, batch_id=batch_id, now=now)
                else:
                    updated = state_machine.mark_auto_passed(item.case, actor=actor, batch_id=batch_id, now=now)
            except ApiError as exc:
                logger.info("batch %s skips case %s: %s", batch_id, item.case.id, exc.code)
                summary["skipped"] += 1
                summary["details"].append({"caseId": item.case.id, "decision": "skipped", "reason": exc.code})
                continue
            token = self._store.write_case(case=updated, expected_token=item.version_token)
            if token is None:
                logger.info("batch %s skips case %s: changed concurrently", batch_id, item.case.id)
                summary["skipped"] += 1
                summary["details"].append({"caseId": item.case.id, "decision": "skipped", "reason": "conflict"})
                continue
            decision = "queued_for_qc" if kept else "auto_passed"
            self._store.append_audit_event(
                tenant_id=tenant_id,
                case_id=updated.id,
                action=f"qc_sampling_{decision}",
                actor_id=actor.id,
                before=item.case,
                after=updated,
                trace_id=trace_id,
                extra={"batch_id": batch_id},
            )
            summary["queuedForQC" if kept else "autoPassed"] += 1
            summary["details"].append({"caseId": updated.id, "decision": decision, "stage": updated.stage.value})

        logger.info(
            "batch %s for %s: total=%d queued=%d auto_passed=%d skipped=%d",
            batch_id,
            tenant_id,
            summary["total"],
            summary["queuedForQC"],
            summary["autoPassed"],
            summary["skipped"],
        )
        return summary
