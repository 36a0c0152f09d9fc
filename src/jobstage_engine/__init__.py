"""jobstage_engine: stage workflow SDK.

Public API:
    StageWorkflow        facade to submit answers, move jobs and provision templates
    StageGraphStore      company-scoped CRUD over stages, questions and rules
    ResponseIngestion    validates and records answers
    TransitionEvaluator  picks the rule an answer triggers
    evaluate_rules       pure evaluation core (no database)
    JobStateMachine      applies decisions and admin actions to jobs
    ProvisioningService  replaces a company's graph with a template
    TemplateStore        loads YAML workflow templates
"""

from jobstage_engine.errors import (
    ArchiveUnsupported,
    ConcurrentModification,
    CrossTenantReference,
    GraphValidationError,
    NotFoundError,
    PermissionDenied,
    ProvisioningFailed,
    ReferentialConflict,
    WorkflowError,
)
from jobstage_engine.evaluator import TransitionEvaluator, evaluate_rules
from jobstage_engine.graph_store import StageGraphStore
from jobstage_engine.ingestion import ResponseIngestion
from jobstage_engine.provisioning import ProvisioningService, TeardownMachine, build_plan
from jobstage_engine.state_machine import JobStateMachine
from jobstage_engine.templates import TemplateStore
from jobstage_engine.workflow import StageWorkflow

__all__ = [
    # Facade & components
    "StageWorkflow",
    "StageGraphStore",
    "ResponseIngestion",
    "TransitionEvaluator",
    "evaluate_rules",
    "JobStateMachine",
    "ProvisioningService",
    "TeardownMachine",
    "build_plan",
    "TemplateStore",
    # Errors
    "WorkflowError",
    "NotFoundError",
    "GraphValidationError",
    "ReferentialConflict",
    "ArchiveUnsupported",
    "ConcurrentModification",
    "CrossTenantReference",
    "PermissionDenied",
    "ProvisioningFailed",
]
