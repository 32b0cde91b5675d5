from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RuntimeProfile:
    """Deployment guard rails for the case store.

    A production profile refuses to start on a store that would lose cases on
    restart, and can additionally insist on row-level organization isolation.
    """

    durable_store_required: bool = False
    row_level_security_required: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RuntimeProfile":
        env = os.environ if environ is None else environ
        return cls(
            durable_store_required=_as_bool(env.get("CASEFLOW_REQUIRE_TRUESTACK", "false")),
            row_level_security_required=_as_bool(env.get("CASEFLOW_REQUIRE_RLS", "false")),
        )

    def check_store(self, *, backend: str, apply_rls: bool) -> None:
        if self.durable_store_required and backend != "postgres":
            raise RuntimeError("CASEFLOW_STORE_BACKEND must be postgres when CASEFLOW_REQUIRE_TRUESTACK=true")
        if self.row_level_security_required and (backend != "postgres" or not apply_rls):
            raise RuntimeError("CASEFLOW_REQUIRE_RLS=true needs the postgres backend with POSTGRES_APPLY_RLS=true")
