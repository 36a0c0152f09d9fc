"""Transition predicate models.

A rule fires when the submitted answer satisfies its predicate.  Two forms
exist:
  - TriggerPredicate: string equality after whitespace/case normalization
  - NumericPredicate: a comparison against one bound, or two for ``between*``

The discriminated ``Predicate`` union uses ``kind`` as its discriminator so
rules read from the database or from YAML deserialize into the right type.
"""

from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from jobstage_db.models.enums import NumericOperator

_RANGE_OPERATORS = {NumericOperator.BETWEEN, NumericOperator.BETWEEN_EXCLUSIVE}


class TriggerPredicate(BaseModel):
    """Match when the normalized answer equals ``value``."""

    kind: Literal["trigger"] = "trigger"
    value: str


class NumericPredicate(BaseModel):
    """Match when the answer, read as a decimal, satisfies ``operator``.

    ``value_max`` is required for ``between`` and ``between_exclusive`` and
    must not be below ``value``.
    """

    kind: Literal["numeric"] = "numeric"
    operator: NumericOperator
    value: Decimal
    value_max: Optional[Decimal] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "NumericPredicate":
        if self.operator in _RANGE_OPERATORS:
            if self.value_max is None:
                raise ValueError(f"{self.operator.value} requires value_max")
            if self.value_max < self.value:
                raise ValueError("value_max must be >= value")
        elif self.value_max is not None:
            raise ValueError("value_max is only valid for between operators")
        if not self.value.is_finite() or (
            self.value_max is not None and not self.value_max.is_finite()
        ):
            raise ValueError("numeric bounds must be finite")
        return self

    @property
    def is_range(self) -> bool:
        return self.operator in _RANGE_OPERATORS


Predicate = Annotated[
    Union[TriggerPredicate, NumericPredicate],
    Field(discriminator="kind"),
]
