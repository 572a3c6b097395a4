from __future__ import annotations

"""Request bodies of the operator channel."""

from pydantic import BaseModel, Field


class RepayRequest(BaseModel):
    id: str = Field(..., min_length=1, description="Settlement (transaction) id to replay")


class RollbackRequest(BaseModel):
    height: int = Field(..., ge=1, description="First height to remove")


class UnpaidRequest(BaseModel):
    username: str = Field(..., min_length=1, description="Delegate username")
