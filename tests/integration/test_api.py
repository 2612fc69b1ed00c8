"""Integration tests for API endpoints"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import record_xml, report_xml
from dmarcwatch.database import get_db
from dmarcwatch.main import app
from dmarcwatch.models import (
    AiDomainCooldown,
    AiIntegration,
    ClassificationMethod,
    KnownSender,
    Source,
    SyncRun,
    SyncStatus,
)
from dmarcwatch.services.gemini_client import AiRecommendation
from dmarcwatch.utils.time_utils import utcnow


@pytest.fixture
def client(db_session):
    """Create test client with database dependency override"""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def headers(organization):
    return {"X-Organization-Id": organization.id}


@pytest.fixture
def source(db_session, domain):
    s = Source(domain_id=domain.id, source_ip="209.85.220.41")
    db_session.add(s)
    db_session.commit()
    return s


class StubGemini:
    def __init__(self, api_key):
        self.api_key = api_key

    def generate(self, context):
        return AiRecommendation(
            summary="Ready for quarantine",
            recommended_policy="quarantine",
            confidence=75,
            reasoning="Stable.",
        )


@pytest.mark.integration
class TestOrganizationScope:

    def test_missing_header(self, client, domain):
        response = client.get(f"/api/domains/{domain.id}/policy-recommendation")
        assert response.status_code == 422

    def test_unknown_organization(self, client, domain):
        response = client.get(
            f"/api/domains/{domain.id}/policy-recommendation",
            headers={"X-Organization-Id": "nope"},
        )
        assert response.status_code == 404

    def test_other_organizations_domain(self, client, domain, other_organization):
        response = client.get(
            f"/api/domains/{domain.id}/policy-recommendation",
            headers={"X-Organization-Id": other_organization.id},
        )
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"


@pytest.mark.integration
class TestReportUpload:

    def test_upload_xml(self, client, headers, domain, sample_xml):
        response = client.post(
            f"/api/domains/{domain.id}/reports",
            content=sample_xml.encode("utf-8"),
            headers={**headers, "Content-Type": "application/xml"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["record_count"] == 2
        assert data["new_sources"] == 2

    def test_upload_gzip_and_duplicate(self, client, headers, domain, sample_gz):
        url = f"/api/domains/{domain.id}/reports?filename=report.xml.gz"
        client.post(url, content=sample_gz, headers=headers)

        response = client.post(url, content=sample_gz, headers=headers)

        assert response.json()["skipped"] is True

    def test_upload_matches_new_sources(self, client, headers, db_session, domain):
        db_session.add(KnownSender(name="Google", category="corporate", ip_ranges=["209.85.128.0/17"]))
        db_session.commit()
        xml = report_xml([record_xml("209.85.220.41", 12)])

        response = client.post(f"/api/domains/{domain.id}/reports", content=xml.encode(), headers=headers)

        assert response.json()["matched_sources"] == 1

    def test_empty_body(self, client, headers, domain):
        response = client.post(f"/api/domains/{domain.id}/reports", content=b"", headers=headers)
        assert response.status_code == 400
        assert response.json()["error"] == "EMPTY_REPORT"

    def test_corrupt_archive(self, client, headers, domain):
        response = client.post(
            f"/api/domains/{domain.id}/reports?filename=report.zip",
            content=b"PK\x03\x04broken",
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "EXTRACTION_FAILED"

    def test_domain_mismatch(self, client, headers, domain):
        xml = report_xml([record_xml("192.0.2.1", 1)], domain="example.net")

        response = client.post(f"/api/domains/{domain.id}/reports", content=xml.encode(), headers=headers)

        assert response.status_code == 200
        assert response.json()["success"] is False


@pytest.mark.integration
class TestSources:

    def test_preview_spf(self, client, headers):
        records = {"_spf.example.net": ["v=spf1 ip4:192.0.2.0/24 -all"]}
        with patch("dmarcwatch.services.spf_resolver.dns_txt_lookup", side_effect=lambda d: records[d]):
            response = client.post(
                "/api/known-senders/preview-spf",
                json={"spf_include": "include:_spf.example.net"},
                headers=headers,
            )

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["ip_ranges"] == ["192.0.2.0/24"]
        assert data["lookups"] == 1

    def test_match_source(self, client, headers, db_session, source):
        sender = KnownSender(name="Google", category="corporate", ip_ranges=["209.85.128.0/17"])
        db_session.add(sender)
        db_session.commit()

        response = client.post(f"/api/sources/{source.id}/match", headers=headers)

        assert response.json() == {"source_id": source.id, "matched": True, "known_sender_id": sender.id}

    def test_bulk_match(self, client, headers, domain, source):
        response = client.post(f"/api/domains/{domain.id}/sources/match", headers=headers)
        assert response.json() == {"matched": 0, "total": 1}

    def test_classify_source(self, client, headers, source):
        response = client.patch(
            f"/api/sources/{source.id}",
            json={"source_type": "suspicious", "classified_by": "ops@example.com"},
            headers=headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["source_type"] == "suspicious"
        assert data["classification_method"] == ClassificationMethod.MANUAL.value

    def test_classify_invalid_type(self, client, headers, source):
        response = client.patch(f"/api/sources/{source.id}", json={"source_type": "friendly"}, headers=headers)
        assert response.status_code == 400

    def test_source_of_other_organization(self, client, source, other_organization):
        response = client.post(
            f"/api/sources/{source.id}/match",
            headers={"X-Organization-Id": other_organization.id},
        )
        assert response.status_code == 404


@pytest.mark.integration
class TestRecommendations:

    def test_policy_recommendation(self, client, headers, domain):
        response = client.get(f"/api/domains/{domain.id}/policy-recommendation", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["current_policy"] == "none"
        assert data["recommended_policy"] == "none"
        assert data["blockers"] == ["No DMARC reports received yet"]

    def test_ai_not_configured(self, client, headers, domain):
        response = client.get(f"/api/domains/{domain.id}/ai-recommendation", headers=headers)

        assert response.json()["available"] is False
        assert response.json()["reason"] == "not_configured"

    def test_ai_generate_then_cached(self, client, headers, db_session, organization, domain):
        db_session.add(AiIntegration(organization_id=organization.id, api_key="k"))
        db_session.commit()

        with patch("dmarcwatch.services.ai_recommendations.GeminiClient", StubGemini):
            generated = client.post(f"/api/domains/{domain.id}/ai-recommendation", headers=headers)
        status = client.get(f"/api/domains/{domain.id}/ai-recommendation", headers=headers)

        assert generated.status_code == 200
        assert generated.json()["recommendation"]["recommended_policy"] == "quarantine"
        assert status.json()["source"] == "cache"

    def test_ai_cooldown_returns_429(self, client, headers, db_session, organization, domain):
        db_session.add(AiIntegration(organization_id=organization.id, api_key="k"))
        db_session.add(AiDomainCooldown(domain_id=domain.id, last_generated_at=utcnow() - timedelta(minutes=1)))
        db_session.commit()

        response = client.post(f"/api/domains/{domain.id}/ai-recommendation", headers=headers)

        assert response.status_code == 429
        data = response.json()
        assert data["error"] == "COOLDOWN_ACTIVE"
        assert data["retryable"] is False
        assert 0 < data["retry_after_seconds"] <= 240
        assert response.headers["Retry-After"] == str(data["retry_after_seconds"])

    def test_ai_disabled_returns_400(self, client, headers, db_session, organization, domain):
        db_session.add(AiIntegration(organization_id=organization.id, api_key="k", is_enabled=False))
        db_session.commit()

        response = client.post(f"/api/domains/{domain.id}/ai-recommendation", headers=headers)

        assert response.status_code == 400
        assert response.json()["reason"] == "disabled"


@pytest.mark.integration
class TestSyncRuns:

    def test_start_sync_queues_task(self, client, headers, db_session, organization):
        with patch("dmarcwatch.tasks.sync.sync_mailbox_task.delay") as delay:
            response = client.post("/api/sync-runs?limit=50", headers=headers)

        assert response.status_code == 202
        run_id = response.json()["id"]
        assert response.json()["status"] == SyncStatus.SYNCING.value
        delay.assert_called_once_with(organization.id, limit=50, run_id=run_id)

    def test_cancel_sync(self, client, headers, db_session, organization):
        run = SyncRun(organization_id=organization.id, status=SyncStatus.SYNCING.value)
        db_session.add(run)
        db_session.commit()

        response = client.post(f"/api/sync-runs/{run.id}/cancel", headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == SyncStatus.CANCELLED.value

    def test_get_unknown_run(self, client, headers):
        response = client.get("/api/sync-runs/missing", headers=headers)
        assert response.status_code == 404


@pytest.mark.integration
class TestOperationalEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.json() == {"status": "healthy", "database": "connected"}

    def test_metrics_count_requests(self, client, headers, domain):
        client.get(f"/api/domains/{domain.id}/policy-recommendation", headers=headers)

        body = client.get("/metrics").text

        assert "dmarcwatch_http_requests_total" in body
        assert 'endpoint="/api/domains/{id}/policy-recommendation"' in body

    def test_request_id_header(self, client):
        response = client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 8
