"""Database-level enumerations for the stage workflow."""

import enum


class StageType(str, enum.Enum):
    """Kind of step a stage represents in the company's workflow."""

    STANDARD = "standard"
    MILESTONE = "milestone"
    APPROVAL = "approval"


class JobStatus(str, enum.Enum):
    """Coarse job status that each stage maps onto via ``maps_to_status``."""

    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"


class ResponseType(str, enum.Enum):
    """Declared answer type of a stage question."""

    YES_NO = "yes_no"
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    FILE_UPLOAD = "file_upload"
    MULTIPLE_CHOICE = "multiple_choice"


class NumericOperator(str, enum.Enum):
    """Operators accepted by numeric transition predicates.

    ``between`` is inclusive on both bounds, ``between_exclusive`` excludes
    both bounds.
    """

    EQ = "eq"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    BETWEEN = "between"
    BETWEEN_EXCLUSIVE = "between_exclusive"


class TriggerSource(str, enum.Enum):
    """What caused an audited stage transition."""

    QUESTION_RESPONSE = "question_response"
    ADMIN_APPROVAL = "admin_approval"
    ADMIN_OVERRIDE = "admin_override"


class PendingStatus(str, enum.Enum):
    """Lifecycle states for a transition awaiting admin confirmation.

    Transitions:
        pending -> approved  (admin confirmed, job moved)
        pending -> rejected  (admin declined, job stays)
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
