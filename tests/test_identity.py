import unittest
from unittest import mock

from wakecal.identity import (
    REQUEST_CODE_PROBES,
    RequestCodeRegistry,
    derive_key,
    derive_request_code,
    new_adhoc_identity,
)
from wakecal.models import ScheduledAlarm


def _row(alarm_id: str, request_code: int, scheduled_at: int = 1, event_id: str = "e", rule_id: str = "r") -> ScheduledAlarm:
    return ScheduledAlarm(
        id=alarm_id,
        event_id=event_id,
        rule_id=rule_id,
        event_title="t",
        event_start_time_utc=0,
        alarm_time_utc=0,
        request_code=request_code,
        last_event_modified=0,
        scheduled_at=scheduled_at,
    )


class IdentityTests(unittest.TestCase):
    def test_derive_key_is_stable_and_distinct(self) -> None:
        key = derive_key("event-1", "rule-1")
        self.assertEqual(key, derive_key("event-1", "rule-1"))
        self.assertTrue(key.startswith("alarm-"))
        self.assertEqual(len(key), len("alarm-") + 32)
        self.assertNotEqual(key, derive_key("event-1", "rule-2"))
        # The separator keeps concatenation ambiguities apart.
        self.assertNotEqual(derive_key("ab", "c"), derive_key("a", "bc"))

    def test_request_code_is_signed_32_bit_and_non_zero(self) -> None:
        for index in range(200):
            code = derive_request_code(f"event-{index}", "rule")
            self.assertNotEqual(code, 0)
            self.assertGreaterEqual(code, -(2**31))
            self.assertLess(code, 2**31)
        self.assertEqual(derive_request_code("e", "r"), derive_request_code("e", "r", 0))
        self.assertNotEqual(derive_request_code("e", "r"), derive_request_code("e", "r", 1))

    def test_adhoc_identities_are_random(self) -> None:
        first_id, first_code = new_adhoc_identity()
        second_id, _ = new_adhoc_identity()
        self.assertNotEqual(first_id, second_id)
        self.assertNotEqual(first_code, 0)

    def test_existing_holder_keeps_its_code(self) -> None:
        registry = RequestCodeRegistry([_row("alarm-a", 77)])
        assignment = registry.assign("alarm-a", "e", "r")
        self.assertEqual(assignment.request_code, 77)
        self.assertEqual(assignment.probes, 0)

    def test_taken_base_code_probes_next_attempt(self) -> None:
        base = derive_request_code("e1", "r1")
        registry = RequestCodeRegistry([_row("someone-else", base)])

        with self.assertLogs("wakecal.identity", level="WARNING"):
            assignment = registry.assign("alarm-new", "e1", "r1")

        self.assertEqual(assignment.request_code, derive_request_code("e1", "r1", 1))
        self.assertEqual(assignment.probes, 1)
        self.assertIsNone(assignment.orphaned_alarm_id)
        self.assertEqual(registry.holder(assignment.request_code), "alarm-new")

    def test_exhausted_probes_orphan_the_previous_holder(self) -> None:
        registry = RequestCodeRegistry([_row("old", 42)])
        with mock.patch("wakecal.identity.derive_request_code", return_value=42):
            with self.assertLogs("wakecal.identity", level="ERROR"):
                assignment = registry.assign("new", "e1", "r1")

        self.assertEqual(assignment.request_code, 42)
        self.assertEqual(assignment.probes, REQUEST_CODE_PROBES)
        self.assertEqual(assignment.orphaned_alarm_id, "old")
        self.assertEqual(registry.holder(42), "new")
        self.assertEqual(registry.orphans(), ["old"])

    def test_shared_code_in_persisted_rows_orphans_older_row(self) -> None:
        registry = RequestCodeRegistry([_row("newer", 9, scheduled_at=20), _row("older", 9, scheduled_at=10)])
        self.assertEqual(registry.holder(9), "newer")
        self.assertEqual(registry.orphans(), ["older"])

    def test_release_frees_the_code(self) -> None:
        registry = RequestCodeRegistry([_row("a", 5)])
        registry.release("a")
        self.assertIsNone(registry.holder(5))
        self.assertIsNone(registry.code_of("a"))


if __name__ == "__main__":
    unittest.main()
