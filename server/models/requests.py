"""
Pydantic request models for API validation

Field names are camelCase on the wire (alias generator) and snake_case in
Python. Validation failures are rendered as VALIDATION_ERROR (400).
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, field_validator, model_validator
from pydantic.alias_generators import to_camel

from database.models import SelectedStatement, Visibility


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateDecisionSessionRequest(_CamelModel):
    hive_id: str = Field(min_length=1)
    source_conversation_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    selected_clusters: List[NonNegativeInt] = Field(default_factory=list)
    selected_statements: List[SelectedStatement] = Field(min_length=1)
    consensus_threshold: int = Field(ge=50, le=90)
    visibility: Visibility = "hidden"
    deadline: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_statement_clusters(self):
        # Empty selected_clusters leaves statements unconstrained
        if self.selected_clusters:
            stray = {s.cluster_index for s in self.selected_statements} - set(self.selected_clusters)
            if stray:
                raise ValueError(f"Statements from unselected clusters: {sorted(stray)}")
        return self


class CastVoteRequest(_CamelModel):
    proposal_id: str = Field(min_length=1)
    delta: int

    @field_validator("delta", mode="before")
    @classmethod
    def validate_delta(cls, v):
        # Reject bools and floats before int coercion
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError("delta must be an integer")
        if v not in (1, -1):
            raise ValueError("delta must be +1 or -1")
        return v


class StartNewRoundRequest(_CamelModel):
    keep_proposals: bool = True
    selected_statements: Optional[List[SelectedStatement]] = None
    visibility: Optional[Visibility] = None
    deadline: Optional[datetime] = None

    @model_validator(mode="after")
    def require_statements_for_new_set(self):
        if not self.keep_proposals and not self.selected_statements:
            raise ValueError("selectedStatements is required when keepProposals is false")
        return self
