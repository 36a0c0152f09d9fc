"""Workflow template models: YAML documents under ``templates/``.

A template describes a whole stage graph with symbolic keys instead of ids:
stages carry their questions, and transitions refer to stages and questions
by key.  The provisioning service turns a template into a plan and then into
rows for one company.
"""

from typing import Optional

from pydantic import BaseModel, Field, model_validator

from jobstage_db.models.enums import JobStatus, ResponseType, StageType

from .graph import PredicateFields


class TemplateSkip(BaseModel):
    """Skip the question when an earlier question of the stage has this answer."""

    question: str
    response_value: str = Field(min_length=1)


class TemplateQuestion(BaseModel):
    key: str
    question_text: str
    help_text: Optional[str] = None
    response_type: ResponseType = ResponseType.YES_NO
    is_required: bool = True
    response_options: Optional[list[str]] = None
    sequence_order: int = Field(ge=1)
    skip_when: list[TemplateSkip] = []


class TemplateStage(BaseModel):
    key: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    sequence_order: int = Field(ge=1)
    stage_type: StageType = StageType.STANDARD
    maps_to_status: JobStatus = JobStatus.PLANNING
    min_duration_hours: Optional[int] = None
    max_duration_hours: Optional[int] = None
    requires_approval: bool = False
    questions: list[TemplateQuestion] = []


class TemplateTransition(PredicateFields):
    """Edge between two stage keys, keyed to a question of the source stage."""

    from_stage: str
    question: str
    to_stage: str
    is_automatic: bool = False
    requires_admin_override: bool = False


class WorkflowTemplate(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    stages: list[TemplateStage]
    transitions: list[TemplateTransition] = []

    @model_validator(mode="after")
    def _check_keys(self) -> "WorkflowTemplate":
        stage_keys = [s.key for s in self.stages]
        if len(stage_keys) != len(set(stage_keys)):
            raise ValueError(f"template {self.id}: duplicate stage keys")
        orders = [s.sequence_order for s in self.stages]
        if len(orders) != len(set(orders)):
            raise ValueError(f"template {self.id}: duplicate stage sequence_order")
        questions = {s.key: {q.key for q in s.questions} for s in self.stages}
        for stage in self.stages:
            if len(questions[stage.key]) != len(stage.questions):
                raise ValueError(f"template {self.id}: duplicate question keys in {stage.key}")
            order = {q.key: q.sequence_order for q in stage.questions}
            if len(set(order.values())) != len(order):
                raise ValueError(
                    f"template {self.id}: duplicate question sequence_order in {stage.key}"
                )
            for question in stage.questions:
                for skip in question.skip_when:
                    if order.get(skip.question, question.sequence_order) >= question.sequence_order:
                        raise ValueError(
                            f"template {self.id}: {stage.key}/{question.key} can only skip "
                            "on an earlier question of the same stage"
                        )
        for t in self.transitions:
            if t.from_stage not in questions or t.to_stage not in questions:
                raise ValueError(
                    f"template {self.id}: transition {t.from_stage}->{t.to_stage} "
                    "references an unknown stage"
                )
            if t.question not in questions[t.from_stage]:
                raise ValueError(
                    f"template {self.id}: question {t.question!r} is not on stage {t.from_stage}"
                )
        return self
