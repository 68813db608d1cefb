"""Unit tests for vigil.core.config.Settings validators and derived properties."""

import unittest

from pydantic import ValidationError

from vigil.core.config import Settings


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


class TestSettings(unittest.TestCase):
    def test_defaults(self) -> None:
        s = _settings()
        self.assertEqual(s.POLL_MAX_ATTEMPTS, 30)
        self.assertEqual(s.POLL_DELAY_SECONDS, 30)
        self.assertEqual(s.DEFAULT_PROVIDER_CODE, "debricked")

    def test_database_url_must_be_postgres(self) -> None:
        with self.assertRaises(ValidationError):
            _settings(DATABASE_URL="sqlite:///vigil.db")

    def test_provider_code_normalized(self) -> None:
        self.assertEqual(_settings(DEFAULT_PROVIDER_CODE=" Debricked ").DEFAULT_PROVIDER_CODE, "debricked")

    def test_base_url_trailing_slash_stripped(self) -> None:
        self.assertEqual(_settings(DEBRICKED_BASE_URL="https://d.test/").DEBRICKED_BASE_URL, "https://d.test")
        with self.assertRaises(ValidationError):
            _settings(DEBRICKED_BASE_URL="ftp://d.test")

    def test_blank_slack_webhook_is_none(self) -> None:
        self.assertIsNone(_settings(SLACK_WEBHOOK_URL="  ").SLACK_WEBHOOK_URL)
        with self.assertRaises(ValidationError):
            _settings(SLACK_WEBHOOK_URL="hooks.slack.test/x")

    def test_bounds(self) -> None:
        for key, value in (
            ("POLL_MAX_ATTEMPTS", 0),
            ("POLL_DELAY_SECONDS", -1),
            ("WORKER_BATCH_SIZE", 0),
            ("WORKER_CLAIM_TIMEOUT_SEC", 5),
            ("SMTP_PORT", 70000),
            ("MAX_FILES_PER_REQUEST", 0),
            ("DEBRICKED_REQUEST_TIMEOUT_SEC", 0),
        ):
            with self.subTest(key=key):
                with self.assertRaises(ValidationError):
                    _settings(**{key: value})

    def test_admin_emails_and_extensions(self) -> None:
        s = _settings(NOTIFY_DEFAULT_EMAILS="a@x.test, ,b@x.test", ALLOWED_UPLOAD_EXTENSIONS="JSON, .lock")
        self.assertEqual(s.default_admin_emails, ["a@x.test", "b@x.test"])
        self.assertEqual(s.allowed_upload_extensions, frozenset({"json", "lock"}))


if __name__ == "__main__":
    unittest.main()
