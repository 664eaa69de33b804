import os
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from wakecal.models import HOUR_MS, now_millis
from wakecal.web_admin import create_app


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        os.environ["WAKECAL_CONFIG_PATH"] = self.config_path
        os.environ["WAKECAL_STATE_PATH"] = self.state_path
        self.client = TestClient(create_app())

    def tearDown(self) -> None:
        os.environ.pop("WAKECAL_CONFIG_PATH", None)
        os.environ.pop("WAKECAL_STATE_PATH", None)
        self.temp_dir.cleanup()

    def _create_rule(self, **overrides) -> dict:
        payload = {"name": "Meetings", "keyword_pattern": "meeting", "lead_time_minutes": 15}
        payload.update(overrides)
        resp = self.client.post("/api/rules", json=payload)
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()["rule"]

    def _push_events(self, *events: dict) -> None:
        resp = self.client.put("/api/events", json={"events": list(events)})
        self.assertEqual(resp.status_code, 200, resp.text)

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_round_trip(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"settings": {"lookahead_hours": 12}}})
        self.assertEqual(resp.status_code, 200)

        data = self.client.get("/api/config").json()
        self.assertEqual(data["settings"]["lookahead_hours"], 12)
        self.assertEqual(data["settings"]["refresh_interval_minutes"], 30)

    def test_rules_crud(self) -> None:
        rule = self._create_rule()
        self.assertFalse(rule["is_regex"])

        listed = self.client.get("/api/rules").json()["rules"]
        self.assertEqual([item["id"] for item in listed], [rule["id"]])

        resp = self.client.put(
            f"/api/rules/{rule['id']}",
            json={"name": "Standups", "keyword_pattern": "^stand", "lead_time_minutes": 5},
        )
        self.assertEqual(resp.status_code, 200)
        updated = resp.json()["rule"]
        self.assertTrue(updated["is_regex"])
        self.assertEqual(updated["created_at"], rule["created_at"])

        self.assertEqual(self.client.delete(f"/api/rules/{rule['id']}").status_code, 200)
        self.assertEqual(self.client.delete(f"/api/rules/{rule['id']}").status_code, 404)
        self.assertEqual(self.client.put("/api/rules/missing", json={"keyword_pattern": "x"}).status_code, 404)

    def test_invalid_rules_are_rejected(self) -> None:
        resp = self.client.post("/api/rules", json={"keyword_pattern": "[oops", "is_regex": True})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("does not compile", resp.json()["detail"])

        resp = self.client.post("/api/rules", json={"keyword_pattern": "gym", "lead_time_minutes": 0})
        self.assertEqual(resp.status_code, 400)

    def test_rule_tester(self) -> None:
        resp = self.client.post(
            "/api/rules/test",
            json={"keyword_pattern": "MEETING", "titles": ["Team meeting", "Lunch"]},
        )
        data = resp.json()
        self.assertTrue(data["valid"])
        self.assertEqual([item["matches"] for item in data["results"]], [True, False])

        bad = self.client.post("/api/rules/test", json={"keyword_pattern": "(", "titles": ["x"]}).json()
        self.assertFalse(bad["valid"])
        self.assertTrue(bad["is_regex"])

    def test_events_require_ids(self) -> None:
        resp = self.client.put("/api/events", json={"events": [{"title": "No id", "start_time_utc": 1}]})
        self.assertEqual(resp.status_code, 400)

    def test_refresh_schedules_alarms_and_dismiss(self) -> None:
        start = now_millis() + 2 * HOUR_MS
        self._create_rule()
        self._push_events({"id": "e1", "title": "Team meeting", "start_time_utc": start, "last_modified": 1})

        preview = self.client.get("/api/alarms/preview").json()["alarms"]
        self.assertEqual([item["event_id"] for item in preview], ["e1"])

        result = self.client.post("/api/refresh/run-now").json()["result"]
        self.assertEqual(result["status"], "success")
        self.assertEqual(result["scheduled_count"], 1)

        alarms = self.client.get("/api/alarms").json()
        self.assertEqual(len(alarms["alarms"]), 1)
        alarm = alarms["alarms"][0]
        self.assertTrue(alarm["armed"])
        self.assertEqual(alarm["alarm_time_utc"], start - 15 * 60_000)

        self.assertEqual(self.client.post("/api/alarms/missing/dismiss").status_code, 404)
        resp = self.client.post(f"/api/alarms/{alarm['id']}/dismiss")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["alarm"]["user_dismissed"])
        active = self.client.get("/api/alarms", params={"include_dismissed": "false"}).json()["alarms"]
        self.assertEqual(active, [])

        runs = self.client.get("/api/refresh/status").json()
        self.assertEqual(runs["runs"][0]["status"], "success")
        self.assertIsNotNone(runs["last_refresh_at"])
        actions = [event["action"] for event in self.client.get("/api/audit/events").json()["events"]]
        self.assertIn("dismiss", actions)
        self.assertIn("schedule", actions)

    def test_snooze_unknown_alarm_is_404(self) -> None:
        resp = self.client.post("/api/alarms/missing/snooze", json={"minutes": 5})
        self.assertEqual(resp.status_code, 404)

    def test_test_alarm(self) -> None:
        resp = self.client.post("/api/alarms/test", json={"title": "Wake", "delay_seconds": 120})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["alarm"]["title"], "Wake")

        resp = self.client.post("/api/alarms/test", json={"fire_at": "2000-01-01T00:00:00Z"})
        self.assertEqual(resp.status_code, 400)

    def test_timezone_change(self) -> None:
        resp = self.client.post("/api/timezone", json={"timezone": "Mars/Olympus"})
        self.assertEqual(resp.status_code, 400)

        resp = self.client.post("/api/timezone", json={"timezone": "Europe/Paris"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["trigger"], "TIMEZONE_CHANGE")
        self.assertEqual(self.client.get("/api/config").json()["settings"]["timezone"], "Europe/Paris")

    def test_day_tracking(self) -> None:
        data = self.client.get("/api/day-tracking").json()
        self.assertEqual(data["entries"], [])
        self.assertEqual(data["zone"], "UTC")
        self.assertGreater(data["next_reset_at_ms"], now_millis())


if __name__ == "__main__":
    unittest.main()
