from datetime import datetime, timezone

from fastapi.testclient import TestClient

from registration_defense import RegistrationOrchestrator
from registration_defense.api import create_app
from registration_defense.errors import DependencyUnavailable
from registration_defense.fingerprinting import derive_fingerprint
from registration_defense.persistence import MemoryDefenseRepository
from registration_defense.reputation import StaticReputationFeed

ADMIN = {"X-Admin-Token": "secret", "X-Operator": "oncall"}


class FailingCounterStore:
    def increment(self, key, window_seconds, now=None):
        raise DependencyUnavailable("counter_store", "connection refused")

    def peek(self, key, window_seconds=None, now=None):
        raise DependencyUnavailable("counter_store", "connection refused")

    def window_state(self, key, window_seconds=None, now=None):
        raise DependencyUnavailable("counter_store", "connection refused")

    def reset(self, key):
        raise DependencyUnavailable("counter_store", "connection refused")

    def purge_expired(self, now=None):
        return 0


class UnreachableBlockStore(MemoryDefenseRepository):
    def list_blocks(self):
        raise DependencyUnavailable("persistent_store", "connection refused")


def build_client(orchestrator=None) -> TestClient:
    return TestClient(create_app(orchestrator or RegistrationOrchestrator(), admin_token="secret"))


def evaluate(client: TestClient, ip: str, email: str, **extra):
    return client.post("/registrations/evaluate", json={"ip": ip, "email": email, **extra})


def test_healthcheck():
    response = build_client().get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_allowed_registration():
    response = evaluate(build_client(), "198.51.100.7", "alice@example.com")

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "Allowed"
    assert body["reason"] is None
    assert body["manual_review"] is False


def test_rate_limited_registration_sets_retry_after():
    client = build_client()
    names = ["alice", "bob", "carol", "dave", "erin", "frank"]
    responses = [evaluate(client, "203.0.113.5", f"{name}@example.com") for name in names]

    assert [r.status_code for r in responses] == [200] * 5 + [429]
    assert responses[5].json()["reason"] == "RATE_LIMIT_EXCEEDED"
    assert int(responses[5].headers["Retry-After"]) >= 1


def test_disposable_domain_is_forbidden():
    response = evaluate(build_client(), "198.51.100.7", "someone@mailinator.com")
    assert response.status_code == 403
    assert response.json()["reason"] == "DOMAIN_BLOCKED"


def test_fingerprint_is_derived_when_client_sends_none():
    orchestrator = RegistrationOrchestrator()
    client = build_client(orchestrator)
    agent = "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"

    client.post(
        "/registrations/evaluate",
        json={"ip": "198.51.100.7", "email": "alice@example.com", "user_agent": agent},
        headers={"Accept-Language": "en-US"},
    )
    evaluate(client, "198.51.100.8", "bob@example.com", user_agent=agent, fingerprint="device-1")

    now = datetime.now(timezone.utc)
    derived = derive_fingerprint(agent, "198.51.100.7", "en-US")
    assert orchestrator.fingerprints.attempts(derived, now) == 1
    assert orchestrator.fingerprints.attempts("device-1", now) == 1
    assert orchestrator.fingerprints.attempts(derive_fingerprint(agent, "198.51.100.8"), now) == 0


def test_suspicious_registration_requires_captcha():
    feed = StaticReputationFeed(vpn_ranges=["203.0.113.0/24"], default_score=0.0)
    client = build_client(RegistrationOrchestrator(reputation_feed=feed))

    response = evaluate(client, "203.0.113.8", "alice@example.com", user_agent="Mozilla/5.0 Firefox/120.0")
    assert response.status_code == 428
    assert response.json()["reason"] == "CAPTCHA_REQUIRED"


def test_malformed_input_is_unprocessable():
    client = build_client()

    invalid_ip = evaluate(client, "not-an-ip", "alice@example.com")
    assert invalid_ip.status_code == 422
    assert invalid_ip.json()["field"] == "ip"

    missing_email = client.post("/registrations/evaluate", json={"ip": "198.51.100.7"})
    assert missing_email.status_code == 422


def test_counter_outage_is_service_unavailable():
    client = build_client(RegistrationOrchestrator(counter_store=FailingCounterStore()))
    response = evaluate(client, "198.51.100.7", "alice@example.com")

    assert response.status_code == 503
    assert response.json()["reason"] == "SERVICE_UNAVAILABLE"
    assert response.headers["Retry-After"] == "30"


def test_admin_requires_token():
    client = build_client()
    assert client.get("/admin/policy").status_code == 401
    assert client.get("/admin/policy", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert client.get("/admin/policy", headers=ADMIN).status_code == 200


def test_emergency_disable_and_restore():
    client = build_client()

    disabled = client.post("/admin/emergency-disable", json={"reason": "bot wave"}, headers=ADMIN)
    assert disabled.status_code == 200
    assert disabled.json()["mode"] == "EmergencyDisabled"
    assert disabled.json()["operator"] == "oncall"

    rejected = evaluate(client, "198.51.100.7", "alice@example.com")
    assert rejected.status_code == 503
    assert rejected.json()["reason"] == "REGISTRATION_DISABLED"

    restored = client.post("/admin/restore", json={"reason": "wave over"}, headers=ADMIN)
    assert restored.json()["mode"] == "Normal"
    assert evaluate(client, "198.51.100.7", "alice@example.com").status_code == 200

    transitions = client.get("/admin/transitions", headers=ADMIN).json()
    assert [t["to_mode"] for t in transitions] == ["Normal", "EmergencyDisabled"]
    assert all(t["manual"] for t in transitions)


def test_block_management():
    client = build_client()

    created = client.post(
        "/admin/blocks", json={"subject": "203.0.113.77", "duration_minutes": 30, "reason": "abuse"}, headers=ADMIN
    )
    assert created.status_code == 201
    assert created.json()["permanent"] is False
    assert created.json()["created_by"] == "oncall"

    subnet = client.post("/admin/blocks", json={"subject": "198.51.100.0/24", "permanent": True}, headers=ADMIN)
    assert subnet.status_code == 201

    subjects = {entry["subject"] for entry in client.get("/admin/blocks", headers=ADMIN).json()}
    assert {"203.0.113.77", "198.51.100.0/24"} <= subjects
    assert evaluate(client, "203.0.113.77", "alice@example.com").json()["reason"] == "IP_BLOCKED"

    assert client.delete("/admin/blocks/198.51.100.0/24", headers=ADMIN).json() == {"removed": True}
    assert client.delete("/admin/blocks/203.0.113.77", headers=ADMIN).json() == {"removed": True}
    assert evaluate(client, "203.0.113.77", "bob@example.com").status_code == 200

    invalid = client.post("/admin/blocks", json={"subject": "203.0.113.78"}, headers=ADMIN)
    assert invalid.status_code == 422
    assert invalid.json()["field"] == "duration_minutes"


def test_domain_lists():
    client = build_client()

    blacklisted = client.post("/admin/domains/blacklist", json={"domain": "spam.example"}, headers=ADMIN)
    assert blacklisted.status_code == 201
    assert blacklisted.json()["permanent"] is True
    assert evaluate(client, "198.51.100.7", "x@spam.example").status_code == 403

    whitelisted = client.post("/admin/domains/whitelist", json={"domain": "mailinator.com"}, headers=ADMIN)
    assert whitelisted.json() == {"removed": True}
    assert evaluate(client, "198.51.100.8", "x@mailinator.com").status_code == 200


def test_configure_thresholds():
    client = build_client()

    rejected = client.put("/admin/config", json={"thresholds": {"challenge_threshold": 0.99}}, headers=ADMIN)
    assert rejected.status_code == 422

    updated = client.put("/admin/config", json={"rollout_percentage": 50}, headers=ADMIN)
    assert updated.status_code == 200
    assert updated.json()["rollout_percentage"] == 50.0
    assert client.put("/admin/config", json={}, headers=ADMIN).status_code == 422


def test_metrics_and_patterns():
    client = build_client()
    evaluate(client, "198.51.100.7", "alice@example.com")
    evaluate(client, "198.51.100.8", "bob@mailinator.com")

    metrics = client.get("/admin/metrics", headers=ADMIN).json()
    assert metrics["total_attempts"] == 2
    assert metrics["outcomes"] == {"allowed": 1, "blocked": 1}
    assert metrics["mode"] == "Normal"

    patterns = client.get("/admin/patterns", headers=ADMIN)
    assert patterns.status_code == 200
    assert patterns.json() == []


def test_sweep_endpoint():
    response = build_client().post("/admin/sweep", headers=ADMIN)
    assert response.status_code == 200
    assert set(response.json()) == {"counters", "blocks", "attempts", "patterns", "reputation_entries"}


def test_unreachable_store_maps_to_service_unavailable():
    client = build_client(RegistrationOrchestrator(repository=UnreachableBlockStore()))

    response = client.get("/admin/blocks", headers=ADMIN)
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "30"

    decision = evaluate(client, "198.51.100.7", "alice@example.com")
    assert decision.status_code == 503
    assert decision.json()["reason"] == "SERVICE_UNAVAILABLE"
