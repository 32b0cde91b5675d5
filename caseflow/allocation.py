from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

from caseflow import errors
from caseflow.case_model import CaseRecord, QcFormStatus, QcStatus, Stage, SubStatus
from caseflow.repositories import CaseQuery, VersionedCase
from caseflow.store import InMemoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleQueue:
    stages: tuple[Stage, ...]
    sub_statuses: tuple[SubStatus, ...] = ()
    qc_statuses: tuple[QcStatus, ...] = ()
    qc_form_statuses: tuple[QcFormStatus, ...] = ()
    # only serve cases the sampling router has already kept for manual review
    after_sampling: bool = False


ROLE_QUEUES: dict[str, RoleQueue] = {
    "triage": RoleQueue(stages=(Stage.TRIAGE,), sub_statuses=(SubStatus.TRIAGE,)),
    "qc_triage": RoleQueue(
        stages=(Stage.QC_TRIAGE, Stage.QC_ALLOCATION),
        qc_statuses=(QcStatus.PENDING,),
        after_sampling=True,
    ),
    "data_entry": RoleQueue(stages=(Stage.DATA_ENTRY,)),
    "qc_data_entry": RoleQueue(stages=(Stage.QC_DATA_ENTRY,), qc_form_statuses=(QcFormStatus.PENDING,)),
    "medical_review": RoleQueue(stages=(Stage.MEDICAL_REVIEW,)),
    "aoi_assessment": RoleQueue(stages=(Stage.AOI_ASSESSMENT,)),
    "no_case_assessment": RoleQueue(stages=(Stage.NO_CASE_ASSESSMENT,)),
    "reporting": RoleQueue(stages=(Stage.REPORTING,)),
}


def queue_for_role(role: str) -> RoleQueue:
    queue = ROLE_QUEUES.get(role.strip().lower())
    if queue is None:
        raise errors.invalid_role(role)
    return queue


def _claim(case: CaseRecord, *, worker_id: str, now: datetime) -> CaseRecord:
    claimed = copy.deepcopy(case)
    stamp = now.isoformat()
    claimed.assigned_to = worker_id
    claimed.locked_at = stamp
    claimed.allocated_at = stamp
    claimed.updated_at = stamp
    return claimed


class AllocationEngine:
    """Hand out pending cases so that each is held by at most one worker."""

    def __init__(self, store: InMemoryStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    def _lease_cutoff(self, now: datetime) -> str | None:
        minutes = self._store.settings.lock_lease_minutes
        if minutes <= 0:
            return None
        return (now - timedelta(minutes=minutes)).isoformat()

    def _base_query(self, queue: RoleQueue, *, tenant_id: str) -> CaseQuery:
        sampled_only = False
        if queue.after_sampling:
            pipeline = self._store.get_pipeline_config(tenant_id=tenant_id)
            sampled_only = pipeline.qc_sampling_percentage < 100
        return CaseQuery(
            stages=queue.stages,
            sub_statuses=queue.sub_statuses,
            qc_statuses=queue.qc_statuses,
            qc_form_statuses=queue.qc_form_statuses,
            sampled_only=sampled_only,
        )

    def _held_by(self, *, tenant_id: str, worker_id: str, queue: RoleQueue, cutoff: str | None) -> VersionedCase | None:
        held = self._store.query_cases(
            tenant_id=tenant_id,
            query=replace(self._base_query(queue, tenant_id=tenant_id), assigned_to=worker_id, limit=1),
        )
        if not held:
            return None
        current = held[0]
        if cutoff is not None and (current.case.locked_at or "") < cutoff:
            return None
        return current

    def allocate(
        self,
        *,
        tenant_id: str,
        worker_id: str,
        role: str,
        trace_id: str | None = None,
    ) -> VersionedCase | None:
        if not worker_id.strip():
            raise ValueError("worker_id must not be empty")
        queue = queue_for_role(role)
        now = self._clock()
        cutoff = self._lease_cutoff(now)

        resumed = self._held_by(tenant_id=tenant_id, worker_id=worker_id, queue=queue, cutoff=cutoff)
        if resumed is not None:
            logger.info("worker %s resumes case %s", worker_id, resumed.case.id)
            return resumed

        candidates_query = replace(
            self._base_query(queue, tenant_id=tenant_id),
            unassigned=True,
            lock_expired_before=cutoff,
            limit=self._store.settings.allocation_candidate_limit,
        )
        max_attempts = self._store.settings.allocation_max_attempts
        for attempt in range(1, max_attempts + 1):
            candidates = self._store.query_cases(tenant_id=tenant_id, query=candidates_query)
            if not candidates:
                return None
            for candidate in candidates:
                claimed = _claim(candidate.case, worker_id=worker_id, now=now)
                token = self._store.write_case(case=claimed, expected_token=candidate.version_token)
                if token is None:
                    logger.info("case %s taken by another worker, trying next candidate", candidate.case.id)
                    continue
                self._store.append_audit_event(
                    tenant_id=tenant_id,
                    case_id=claimed.id,
                    action="case_allocated",
                    actor_id=worker_id,
                    before=candidate.case,
                    after=claimed,
                    trace_id=trace_id,
                    extra={"role": role},
                )
                return VersionedCase(case=claimed, version_token=token)
            logger.info("lost every candidate to concurrent workers (attempt %d/%d)", attempt, max_attempts)
        logger.warning("allocation for worker %s gave up after %d attempts", worker_id, max_attempts)
        return None
