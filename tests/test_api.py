import logging
import unittest
from unittest.mock import patch

from sync_fixtures import T0, FakePartner, add_lead, make_session_factory, queue_items, settle_queue

logging.disable(logging.CRITICAL)


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        from fastapi.testclient import TestClient

        from leadsync.api import sync
        from leadsync.config import settings
        from leadsync.main import app
        from leadsync.models.base import get_db

        self.session_factory = make_session_factory()
        self.partner = FakePartner()

        def _get_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db
        app.dependency_overrides[sync.get_remote_client] = lambda: self.partner
        self.addCleanup(app.dependency_overrides.clear)

        token_patch = patch.object(settings, "ingest_api_key", "partner-token")
        token_patch.start()
        self.addCleanup(token_patch.stop)

        self.app = app
        self.client = TestClient(app)
        self.partner_headers = {"Authorization": "Bearer partner-token"}

    def db(self):
        db = self.session_factory()
        self.addCleanup(db.close)
        return db


class PartnerEndpointTests(ApiTestCase):
    def _push(self, **overrides):
        body = {
            "record": {"id": "1", "payload": {"nome": "Ana"}, "updated_at": T0.isoformat()},
            "source": "tabuladormax",
            "operation": "update",
        }
        body.update(overrides)
        return self.client.post("/sync-ingest", json=body, headers=self.partner_headers)

    def test_ingest_applies_record(self):
        resp = self._push()

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "applied")
        self.assertEqual(self._push().json()["status"], "skipped")

    def test_ingest_requires_bearer_token(self):
        resp = self.client.post("/sync-ingest", json={"record": {}, "source": "tabuladormax"})
        self.assertEqual(resp.status_code, 401)

        resp = self.client.post(
            "/sync-ingest",
            json={"record": {}, "source": "tabuladormax"},
            headers={"Authorization": "Bearer wrong"},
        )
        self.assertEqual(resp.status_code, 401)

    def test_ingest_rejections_map_to_status_codes(self):
        self.assertEqual(self._push(source="intruder").status_code, 403)
        self.assertEqual(self._push(record={"id": "1"}).status_code, 422)
        self.assertEqual(self._push(source="gestao_scouter").json()["status"], "ignored")

    def test_sync_records_export(self):
        db = self.db()
        add_lead(db, "a", {"v": 1})
        add_lead(db, "b", {"v": 2})

        resp = self.client.get("/sync-records", params={"limit": 1}, headers=self.partner_headers)
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["total"], 2)
        self.assertEqual(len(data["records"]), 1)

        resp = self.client.get("/sync-records/b", headers=self.partner_headers)
        self.assertEqual(resp.json()["record"]["payload"], {"v": 2})

        resp = self.client.get("/sync-records/zzz", headers=self.partner_headers)
        self.assertEqual(resp.status_code, 404)


class OperatorEndpointTests(ApiTestCase):
    def test_lead_crud_feeds_the_queue(self):
        resp = self.client.post("/api/leads/", json={"id": "1", "payload": {"nome": "Ana"}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["sync_status"], "pending")

        resp = self.client.put("/api/leads/1", json={"payload": {"etapa": "ficha_preenchida"}})
        self.assertEqual(resp.json()["payload"], {"nome": "Ana", "etapa": "ficha_preenchida"})

        self.assertEqual(self.client.post("/api/leads/", json={"id": "1"}).status_code, 400)
        self.assertEqual(self.client.get("/api/leads/missing").status_code, 404)

        queue = self.client.get("/api/sync/queue").json()
        self.assertEqual(queue["counts"]["pending"], 2)
        self.assertEqual([i["operation"] for i in queue["items"]], ["update", "insert"])

        resp = self.client.delete("/api/leads/1")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.delete("/api/leads/1").status_code, 404)

    def test_process_queue_and_logs(self):
        db = self.db()
        for lead_id in ("1", "2", "3"):
            add_lead(db, lead_id)

        resp = self.client.post("/api/sync/process-queue", json={})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["succeeded"], 3)
        self.assertEqual(resp.json()["failed"], 0)

        logs = self.client.get("/api/sync/logs").json()
        self.assertEqual(logs[0]["sync_direction"], "to_remote")
        self.assertEqual(logs[0]["records_synced"], 3)

        status = self.client.get("/api/sync/status").json()
        self.assertTrue(status[0]["last_sync_success"])

    def test_trigger_reconciliation(self):
        db = self.db()
        add_lead(db, "1")
        settle_queue(db)

        resp = self.client.post("/api/sync/trigger", json={"mode": "full"})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["created"], 1)
        self.assertEqual(self.client.post("/api/sync/trigger", json={"mode": "bogus"}).status_code, 422)

    def test_remote_not_configured(self):
        from leadsync.api import sync

        self.app.dependency_overrides[sync.get_remote_client] = lambda: None

        self.assertEqual(self.client.post("/api/sync/process-queue").status_code, 400)
        self.assertEqual(self.client.post("/api/sync/trigger").status_code, 400)
        self.assertEqual(self.client.get("/api/sync/health").json()["status"], "degraded")

    def test_reset_and_retry_endpoints(self):
        db = self.db()
        add_lead(db, "1")

        self.assertEqual(self.client.post("/api/sync/reset-stuck-jobs").json(), {"reset": 0})
        self.assertEqual(self.client.post("/api/sync/retry-failed").json(), {"requeued": 0})
        self.assertEqual(len(queue_items(db)), 1)

    def test_auto_process_toggle_persists(self):
        self.assertTrue(self.client.get("/api/sync/auto-process").json()["enabled"])

        resp = self.client.put("/api/sync/auto-process", json={"enabled": False})
        self.assertFalse(resp.json()["enabled"])
        self.assertFalse(self.client.get("/api/sync/auto-process").json()["enabled"])

    def test_health_and_dashboard(self):
        self.assertEqual(self.client.get("/health").json()["status"], "healthy")

        health = self.client.get("/api/sync/health").json()
        self.assertEqual(health["status"], "healthy")
        self.assertTrue(health["remote"]["reachable"])

        db = self.db()
        add_lead(db, "1")
        stats = self.client.get("/api/dashboard/stats").json()
        self.assertEqual(stats["total_leads"], 1)
        self.assertEqual(stats["sync_queue"]["pending"], 1)
        self.assertEqual(self.client.get("/api/dashboard/activity").json(), [])


if __name__ == "__main__":
    unittest.main()
