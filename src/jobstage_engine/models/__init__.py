"""Public model re-exports for jobstage_engine.

Consumers should import from ``jobstage_engine.models`` rather than
reaching into sub-modules directly.
"""

# --- Predicates ---
from jobstage_engine.models.predicates import NumericPredicate, Predicate, TriggerPredicate

# --- Graph ---
from jobstage_engine.models.graph import (
    PredicateFields,
    PreviousResponseCondition,
    QuestionCreate,
    QuestionInfo,
    QuestionUpdate,
    RuleWriteResult,
    SkipConditions,
    StageCreate,
    StageDeletion,
    StageInfo,
    StageUpdate,
    TransitionRuleCreate,
    TransitionRuleInfo,
    TransitionRuleUpdate,
)

# --- Decisions ---
from jobstage_engine.models.decision import (
    Decision,
    Diagnostic,
    DiagnosticCode,
    Match,
    NoMatch,
)

# --- Jobs ---
from jobstage_engine.models.job import (
    ActingUser,
    AlreadyAtStage,
    Applied,
    ApplyResult,
    AuditEntryInfo,
    IngestionResult,
    JobStageInfo,
    NotApplied,
    PendingApproval,
    PendingTransitionInfo,
    QuestionFlow,
    ResponseAccepted,
    ResponseInfo,
    ResponseRejected,
    SubmissionOutcome,
    ValidationIssue,
)

# --- Templates & provisioning ---
from jobstage_engine.models.template import (
    TemplateQuestion,
    TemplateSkip,
    TemplateStage,
    TemplateTransition,
    WorkflowTemplate,
)
from jobstage_engine.models.provisioning import (
    Attempting,
    Blocked,
    Exhausted,
    PlannedQuestion,
    PlannedStage,
    PlannedTransition,
    ProvisioningPlan,
    ProvisioningReport,
    Succeeded,
    TeardownState,
    TierAttempt,
)

__all__ = [
    # Predicates
    "NumericPredicate",
    "Predicate",
    "TriggerPredicate",
    # Graph
    "PredicateFields",
    "PreviousResponseCondition",
    "QuestionCreate",
    "QuestionInfo",
    "QuestionUpdate",
    "RuleWriteResult",
    "SkipConditions",
    "StageCreate",
    "StageDeletion",
    "StageInfo",
    "StageUpdate",
    "TransitionRuleCreate",
    "TransitionRuleInfo",
    "TransitionRuleUpdate",
    # Decisions
    "Decision",
    "Diagnostic",
    "DiagnosticCode",
    "Match",
    "NoMatch",
    # Jobs
    "ActingUser",
    "AlreadyAtStage",
    "Applied",
    "ApplyResult",
    "AuditEntryInfo",
    "IngestionResult",
    "JobStageInfo",
    "NotApplied",
    "PendingApproval",
    "PendingTransitionInfo",
    "QuestionFlow",
    "ResponseAccepted",
    "ResponseInfo",
    "ResponseRejected",
    "SubmissionOutcome",
    "ValidationIssue",
    # Templates & provisioning
    "TemplateQuestion",
    "TemplateSkip",
    "TemplateStage",
    "TemplateTransition",
    "WorkflowTemplate",
    "Attempting",
    "Blocked",
    "Exhausted",
    "PlannedQuestion",
    "PlannedStage",
    "PlannedTransition",
    "ProvisioningPlan",
    "ProvisioningReport",
    "Succeeded",
    "TeardownState",
    "TierAttempt",
]
