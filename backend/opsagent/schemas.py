"""Pydantic request schemas for the HTTP API."""

from pydantic import BaseModel, ConfigDict, Field


class DecisionApprove(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actor: str = Field(min_length=1, max_length=200)


class DecisionReject(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actor: str = Field(min_length=1, max_length=200)
    reason: str = Field(default="", max_length=2000)
