import unittest
from datetime import date, datetime

from forma.models import (
    AIConfig,
    AppConfig,
    BatchConfig,
    BatchFailure,
    BatchOutcome,
    EventPatch,
    EventRecord,
    FilterCriteria,
    RemoteEvent,
)
from forma.validation import validate


class ModelsTests(unittest.TestCase):
    def test_ai_config_defaults_openai_base_url(self) -> None:
        cfg = AIConfig.from_dict({})
        self.assertEqual(cfg.base_url, "https://api.openai.com/v1")
        self.assertEqual(cfg.vision_model, cfg.model)

    def test_batch_config_is_clamped(self) -> None:
        cfg = BatchConfig.from_dict({"batch_size": 0, "inter_batch_delay_ms": -5})
        self.assertEqual(cfg.batch_size, 1)
        self.assertEqual(cfg.inter_batch_delay_ms, 0)

    def test_app_config_round_trip_defaults(self) -> None:
        cfg = AppConfig.from_dict({"logging": {"level": "verbose"}, "retry": {"max_retries": 5}})
        self.assertEqual(cfg.logging.level, "INFO")
        self.assertEqual(cfg.retry.max_retries, 5)
        self.assertEqual(cfg.retry.delay_seconds, 7.0)
        self.assertEqual(AppConfig.from_dict(cfg.to_dict()), cfg)

    def test_with_updates_rejects_unknown_fields(self) -> None:
        record = EventRecord(id=1, subject="A")
        self.assertEqual(record.with_updates(location=None).location, "")
        with self.assertRaises(KeyError):
            record.with_updates(colour="red")

    def test_validated_record_proxies_fields(self) -> None:
        validated = validate(EventRecord(id=9, subject="A"))
        self.assertEqual(validated.id, 9)
        self.assertEqual(validated.subject, "A")
        self.assertFalse(validated.is_valid)
        with self.assertRaises(AttributeError):
            validated.colour
        payload = validated.to_dict()
        self.assertFalse(payload["is_valid"])
        self.assertIn("start_date", payload["errors"])

    def test_remote_event_all_day(self) -> None:
        event = RemoteEvent(event_id="u", calendar_id="c", start=date(2024, 1, 1), end=date(2024, 1, 2))
        self.assertTrue(event.all_day)
        self.assertEqual(event.start_datetime(), datetime(2024, 1, 1))
        self.assertEqual(event.to_dict()["start"], "2024-01-01")

    def test_event_patch_from_dict(self) -> None:
        patch = EventPatch.from_dict({"summary": "  ", "location": "Rome", "duration_minutes": "45"})
        self.assertIsNone(patch.summary)
        self.assertEqual(patch.location, "Rome")
        self.assertEqual(patch.new_end(datetime(2024, 1, 1, 23, 30)), datetime(2024, 1, 2, 0, 15))
        self.assertTrue(EventPatch.from_dict({}).is_empty())
        with self.assertRaises(ValueError):
            EventPatch.from_dict({"duration_minutes": 0})
        with self.assertRaises(ValueError):
            EventPatch.from_dict({"start": "2024-01-01"})

    def test_filter_criteria_rejects_non_strings(self) -> None:
        self.assertEqual(FilterCriteria.from_dict({"text": " yoga ", "time": None}).text, "yoga")
        with self.assertRaises(ValueError):
            FilterCriteria.from_dict({"start_date": 20240101})

    def test_batch_outcome_labels_succeeded_and_failed_targets(self) -> None:
        outcome = BatchOutcome(
            total=2,
            attempted=2,
            succeeded={("cal-1", "a")},
            failed=[BatchFailure(target=("cal-1", "b"), message="gone")],
        )

        data = outcome.to_dict(lambda key: "/".join(key))

        self.assertEqual(data["succeeded"], ["cal-1/a"])
        self.assertEqual(data["failed"], [{"target": "cal-1/b", "message": "gone"}])


if __name__ == "__main__":
    unittest.main()
