from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from caseflow import errors
from caseflow.case_model import CaseRecord
from caseflow.repositories import VersionedCase
from caseflow.settings import PipelineConfig
from caseflow.state_machine import Actor
from caseflow.store import InMemoryStore

logger = logging.getLogger(__name__)

Transition = Callable[[CaseRecord, PipelineConfig, datetime], CaseRecord]


class ReviewService:
    """Persist state-machine transitions with compare-and-swap writes.

    Each attempt re-reads the case, re-runs the transition against the fresh
    copy and writes it back guarded by the version token it read. When the
    caller pins a version with ``if_match`` there is exactly one attempt.
    """

    def __init__(self, store: InMemoryStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    def apply(
        self,
        *,
        tenant_id: str,
        case_id: str,
        action: str,
        actor: Actor,
        transition: Transition,
        trace_id: str | None = None,
        if_match: str | None = None,
    ) -> VersionedCase:
        pipeline = self._store.get_pipeline_config(tenant_id=tenant_id)
        max_attempts = 1 if if_match else self._store.settings.transition_max_attempts
        for attempt in range(1, max_attempts + 1):
            current = self._store.read_case(tenant_id=tenant_id, case_id=case_id)
            if if_match and current.version_token != if_match:
                raise errors.write_conflict(case_id)
            updated = transition(current.case, pipeline, self._clock())
            token = self._store.write_case(case=updated, expected_token=current.version_token)
            if token is not None:
                self._store.append_audit_event(
                    tenant_id=tenant_id,
                    case_id=case_id,
                    action=action,
                    actor_id=actor.id,
                    before=current.case,
                    after=updated,
                    trace_id=trace_id,
                )
                return VersionedCase(case=updated, version_token=token)
            logger.info(
                "case %s changed during %s (attempt %d/%d)",
                case_id,
                action,
                attempt,
                max_attempts,
            )
        logger.warning("giving up on %s for case %s after %d attempts", action, case_id, max_attempts)
        raise errors.write_conflict(case_id)
