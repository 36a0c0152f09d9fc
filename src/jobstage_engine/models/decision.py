"""Evaluator output: the decision for one submitted answer.

  - NoMatch: no rule fired; ``diagnostics`` says why when something was off
  - Match: exactly one rule won (the earliest-created when several matched)

The ``Decision`` union is discriminated on ``outcome`` so callers can
dispatch on it.
"""

import enum
import uuid
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class DiagnosticCode(str, enum.Enum):
    AMBIGUOUS_RULE_SET = "ambiguous_rule_set"
    NON_NUMERIC_VALUE = "non_numeric_value"
    SELF_TRANSITION = "self_transition"
    MISSING_STAGE = "missing_stage"
    CROSS_TENANT_REFERENCE = "cross_tenant_reference"


class Diagnostic(BaseModel):
    """Structured note attached to a decision.  Never fatal on its own."""

    code: DiagnosticCode
    message: str
    rule_ids: list[uuid.UUID] = []


class NoMatch(BaseModel):
    outcome: Literal["no_match"] = "no_match"
    diagnostics: list[Diagnostic] = []


class Match(BaseModel):
    outcome: Literal["match"] = "match"
    rule_id: uuid.UUID
    to_stage_id: uuid.UUID
    is_automatic: bool
    requires_override: bool
    diagnostics: list[Diagnostic] = []


Decision = Annotated[Union[NoMatch, Match], Field(discriminator="outcome")]
