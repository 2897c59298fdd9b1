"""Tests for the FastAPI surface."""
import base64
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from culinarylens.audit import AuditLog
from culinarylens.server import app
from culinarylens.store import RunStore
from fakes import FakeRemote, build_orchestrator, quota_error


class TestServer(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = RunStore(Path(self._tmp.name))
        self.remote = FakeRemote()
        self.audit = AuditLog(Path(self._tmp.name) / "audit.jsonl")
        self.orchestrator, _ = build_orchestrator(self.remote, store=self.store, audit=self.audit)
        app.state.orchestrator = self.orchestrator
        app.state.store = self.store
        # no context manager: startup would replace the injected orchestrator
        self.client = TestClient(app)

    def tearDown(self):
        del app.state.orchestrator
        del app.state.store
        self._tmp.cleanup()

    def test_liveness(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_quota_latches_until_reset(self):
        self.remote.errors["synthesize"] = [quota_error()]
        body = {"ingredients": [{"name": "tomato", "category": "vegetable", "mass_grams": 200}]}

        first = self.client.post("/api/synthesis", json=body).json()
        self.assertTrue(first["protocol"]["is_offline"])
        health = self.client.get("/api/health").json()
        self.assertTrue(health["failover_latched"])
        self.assertFalse(health["reachable"])

        reset = self.client.post("/api/failover/reset").json()
        self.assertEqual(reset, {"changed": True, "reachable": True})

        second = self.client.post("/api/synthesis", json=body).json()
        self.assertFalse(second["protocol"]["is_offline"])
        self.assertEqual(self.remote.count("synthesize"), 2)

    def test_synthesis_rejects_non_list(self):
        response = self.client.post("/api/synthesis", json={"ingredients": "tomato"})
        self.assertEqual(response.status_code, 400)

    def test_perception(self):
        image = base64.b64encode(b"jpeg-bytes").decode()
        response = self.client.post("/api/perception", json={"labels": ["tomato:vegetable"], "image": image})
        self.assertEqual(response.status_code, 200)
        names = [item["name"] for item in response.json()["ingredients"]]
        self.assertIn("tomato", names)
        self.assertIn("garlic", names)

    def test_perception_rejects_bad_input(self):
        self.assertEqual(self.client.post("/api/perception", json={"image": "%%%"}).status_code, 400)
        self.assertEqual(self.client.post("/api/perception", json={"labels": "tomato"}).status_code, 400)

    def test_synthesis_tolerates_malformed_confidence_memory(self):
        body = {
            "ingredients": [{"name": "tomato", "category": "vegetable", "mass_grams": 200}],
            "preferences": {"confidence_memory": [1, 2]},
        }
        response = self.client.post("/api/synthesis", json=body)
        self.assertEqual(response.status_code, 200)
        self.assertIn("confidence", response.json())

    def test_verification_confirms_and_remembers(self):
        body = {
            "ingredient": {"name": "Basil", "category": "herb"},
            "status": "confirmed",
            "preferences": {"confidence_memory": {"basil": 2}},
        }
        result = self.client.post("/api/verification", json=body).json()
        self.assertEqual(result["ingredient"]["verification_status"], "confirmed")
        self.assertEqual(result["preferences"]["confidence_memory"], {"basil": 3})

        dismissed = self.client.post(
            "/api/verification", json={"ingredient": {"name": "Basil"}, "status": "dismissed"}
        ).json()
        self.assertEqual(dismissed["ingredient"]["verification_status"], "dismissed")
        self.assertEqual(dismissed["preferences"]["confidence_memory"], {})

    def test_verification_rejects_bad_input(self):
        self.assertEqual(self.client.post("/api/verification", json={"ingredient": "basil"}).status_code, 400)
        response = self.client.post("/api/verification", json={"ingredient": {"name": "basil"}, "status": "maybe"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("maybe", response.json()["error"])

    def test_audit_tail_reports_failover(self):
        self.assertEqual(self.client.get("/api/audit").json(), {"events": []})
        self.remote.errors["synthesize"] = [quota_error()]
        self.client.post("/api/synthesis", json={"ingredients": [{"name": "tomato"}]})
        self.client.post("/api/failover/reset")

        events = [entry["event"] for entry in self.client.get("/api/audit").json()["events"]]
        self.assertIn("session.offline", events)
        self.assertEqual(events[-1], "session.online")
        self.assertEqual(len(self.client.get("/api/audit", params={"limit": 1}).json()["events"]), 1)

    def test_runs(self):
        report = self.client.post("/api/synthesis", json={"ingredients": []}).json()
        run_id = report["run_id"]
        self.assertIsNotNone(run_id)

        detail = self.client.get(f"/api/runs/{run_id}")
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.json()["status"], "complete")
        self.assertEqual(self.client.get("/api/runs/latest").json()["id"], run_id)
        self.assertEqual(len(self.client.get("/api/runs", params={"kind": "synthesis"}).json()["runs"]), 1)
        self.assertEqual(self.client.get("/api/runs/missing").status_code, 404)


if __name__ == "__main__":
    unittest.main()
