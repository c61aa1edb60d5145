from __future__ import annotations

from fastapi.testclient import TestClient

from entitlement_service.api.deps import get_check_and_consume_quota_use_case, get_get_usage_use_case
from entitlement_service.application.use_cases.check_and_consume_quota import CheckAndConsumeQuotaUseCase
from entitlement_service.application.use_cases.get_usage import GetUsageUseCase
from entitlement_service.domain.entities.quota import QuotaPolicy
from entitlement_service.domain.exceptions import EntitlementStoreUnavailableError
from entitlement_service.infrastructure.cache.plan_cache import TtlPlanCache
from entitlement_service.infrastructure.db.repositories.in_memory_entitlement_store import (
    InMemoryEntitlementStore,
)
from entitlement_service.main import app


class UnavailableUseCase:
    def execute(self, *, user_id: str):
        raise EntitlementStoreUnavailableError("Entitlement store load_or_create failed.")


def _client(policy: QuotaPolicy) -> TestClient:
    store = InMemoryEntitlementStore(degraded=False)
    cache = TtlPlanCache(store=store, ttl_seconds=300)
    app.dependency_overrides[get_check_and_consume_quota_use_case] = lambda: CheckAndConsumeQuotaUseCase(
        store=store, cache=cache, policy=policy
    )
    app.dependency_overrides[get_get_usage_use_case] = lambda: GetUsageUseCase(cache=cache, policy=policy)
    return TestClient(app)


def test_consume_returns_decision_then_429_when_exhausted():
    client = _client(QuotaPolicy(limits={"free": 2, "gold": None, "platinum": None}))
    try:
        first = client.post("/v1/quota/consume", headers={"X-User-Id": "user-1"})
        second = client.post("/v1/quota/consume", headers={"X-User-Id": "user-1"})
        third = client.post("/v1/quota/consume", headers={"X-User-Id": "user-1"})
    finally:
        app.dependency_overrides.clear()

    assert first.status_code == 200
    assert first.json()["remaining"] == 1
    assert second.json()["remaining"] == 0
    assert third.status_code == 429
    assert third.json()["detail"]["code"] == "QUOTA_EXCEEDED"


def test_usage_reports_consumed_calls():
    client = _client(QuotaPolicy())
    try:
        client.post("/v1/quota/consume", headers={"X-User-Id": "user-1"})
        response = client.get("/v1/me/usage", headers={"X-User-Id": "user-1"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    body = response.json()
    assert body["plan"] == "free"
    assert body["used"] == 1
    assert body["remaining"] == 249
    assert body["unlimited"] is False


def test_consume_requires_user_header():
    client = _client(QuotaPolicy())
    try:
        response = client.post("/v1/quota/consume")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 422


def test_store_outage_maps_to_503():
    app.dependency_overrides[get_check_and_consume_quota_use_case] = lambda: UnavailableUseCase()
    try:
        response = TestClient(app).post("/v1/quota/consume", headers={"X-User-Id": "user-1"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
