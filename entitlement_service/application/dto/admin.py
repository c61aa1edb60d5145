from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class AdminOverrideOutput:
    user_id: str
    plan: str
    grandfathered: bool
    degraded: bool
