from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from flask import Flask
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.flask import FlaskIntegration

from orderflow.utils import observability
from orderflow.utils.observability import _before_send_scrub, init_otel, init_sentry


class SentryOptionalInitTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            with patch("sentry_sdk.init") as init:
                init_sentry(app)
        init.assert_not_called()

    def test_sentry_init_wires_flask_and_celery(self):
        app = Flask(__name__)
        env = {"SENTRY_DSN": "https://key@o0.ingest.sentry.io/1", "SENTRY_TRACES_SAMPLE_RATE": "7", "SENTRY_ENVIRONMENT": "staging"}
        with patch.dict(os.environ, env, clear=False):
            with patch("sentry_sdk.init") as init:
                init_sentry(app)
        kwargs = init.call_args.kwargs
        kinds = {type(i) for i in kwargs["integrations"]}
        self.assertEqual(kinds, {FlaskIntegration, CeleryIntegration})
        self.assertEqual(kwargs["traces_sample_rate"], 1.0)
        self.assertEqual(kwargs["environment"], "staging")
        self.assertFalse(kwargs["send_default_pii"])
        self.assertIs(kwargs["before_send"], _before_send_scrub)

    def test_bad_sample_rate_falls_back_to_zero(self):
        app = Flask(__name__)
        env = {"SENTRY_DSN": "https://key@o0.ingest.sentry.io/1", "SENTRY_TRACES_SAMPLE_RATE": "often"}
        with patch.dict(os.environ, env, clear=False):
            with patch("sentry_sdk.init") as init:
                init_sentry(app)
        self.assertEqual(init.call_args.kwargs["traces_sample_rate"], 0.0)

    def test_credentials_are_scrubbed_before_send(self):
        event = {
            "request": {
                "headers": {
                    "Authorization": "Bearer abc.def",
                    "Cookie": "session=1",
                    "X-Api-Key": "k",
                    "X-Request-Id": "req-9",
                }
            }
        }
        scrubbed = _before_send_scrub(event, {})
        headers = scrubbed["request"]["headers"]
        self.assertEqual(headers["Authorization"], "[REDACTED]")
        self.assertEqual(headers["Cookie"], "[REDACTED]")
        self.assertEqual(headers["X-Api-Key"], "[REDACTED]")
        self.assertEqual(headers["X-Request-Id"], "req-9")
        self.assertEqual(_before_send_scrub({}, {})["request"], {"headers": {}})


class OtelOptionalInitTestCase(unittest.TestCase):
    def test_otel_needs_flag_and_endpoint(self):
        app = Flask(__name__)
        with patch.object(observability.os, "getenv", wraps=os.getenv) as getenv:
            init_otel(app, enabled=False)
        getenv.assert_not_called()
        with patch.dict(os.environ, {"OTEL_EXPORTER_OTLP_ENDPOINT": ""}, clear=False):
            with self.assertLogs(app.logger, level="INFO") as logs:
                init_otel(app, enabled=True)
        self.assertIn("otel_disabled_no_endpoint", "\n".join(logs.output))


if __name__ == "__main__":
    unittest.main()
