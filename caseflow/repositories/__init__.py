from caseflow.repositories.audit_logs import (
    InMemoryAuditLogsRepository,
    PostgresAuditLogsRepository,
    SqliteAuditLogsRepository,
)
from caseflow.repositories.cases import (
    CaseQuery,
    ConditionalStore,
    InMemoryCasesRepository,
    PostgresCasesRepository,
    SqliteCasesRepository,
    VersionedCase,
)
from caseflow.repositories.workflow_configs import (
    InMemoryWorkflowConfigsRepository,
    PostgresWorkflowConfigsRepository,
    SqliteWorkflowConfigsRepository,
)

__all__ = [
    "CaseQuery",
    "ConditionalStore",
    "VersionedCase",
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
    "SqliteAuditLogsRepository",
    "InMemoryCasesRepository",
    "PostgresCasesRepository",
    "SqliteCasesRepository",
    "InMemoryWorkflowConfigsRepository",
    "PostgresWorkflowConfigsRepository",
    "SqliteWorkflowConfigsRepository",
]
