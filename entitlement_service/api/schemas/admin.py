from __future__ import annotations

from pydantic import BaseModel, Field


class SetPlanRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    plan: str = Field(..., min_length=1)


class RevokePlanRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class AdminOverrideResponse(BaseModel):
    user_id: str
    plan: str
    grandfathered: bool
    degraded: bool
