"""ORM models for jobstage_db."""

from jobstage_db.models.base import Base
from jobstage_db.models.enums import (
    JobStatus,
    NumericOperator,
    PendingStatus,
    ResponseType,
    StageType,
    TriggerSource,
)
from jobstage_db.models.graph import Stage, StageQuestion, StageTransition
from jobstage_db.models.job import (
    JobStageState,
    PendingTransition,
    StageAuditEntry,
    StageResponse,
)

__all__ = [
    "Base",
    "JobStatus",
    "NumericOperator",
    "PendingStatus",
    "ResponseType",
    "StageType",
    "TriggerSource",
    "Stage",
    "StageQuestion",
    "StageTransition",
    "JobStageState",
    "PendingTransition",
    "StageAuditEntry",
    "StageResponse",
]
