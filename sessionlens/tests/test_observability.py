import unittest
from unittest.mock import MagicMock, patch

from sessionlens.observability import otel


class OtlpEndpointTests(unittest.TestCase):
    def test_signal_path_is_appended_once(self) -> None:
        self.assertEqual(
            otel._normalize_otlp_endpoint("http://collector:4318", "/v1/traces"),
            "http://collector:4318/v1/traces",
        )
        self.assertEqual(
            otel._normalize_otlp_endpoint("http://collector:4318/v1/", "/v1/metrics"),
            "http://collector:4318/v1/metrics",
        )
        self.assertEqual(
            otel._normalize_otlp_endpoint("http://collector:4318/v1/traces", "/v1/traces"),
            "http://collector:4318/v1/traces",
        )
        self.assertEqual(otel._normalize_otlp_endpoint("  ", "/v1/traces"), "")


class MetricRecordingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.events = otel._METRICS["sessionlens_events_total"]
        self.latency = otel._METRICS["sessionlens_read_latency_ms"]
        for metric in (self.events, self.latency):
            patcher = patch.multiple(metric, otel=MagicMock(), prom=MagicMock())
            patcher.start()
            self.addCleanup(patcher.stop)

    def test_record_events_groups_by_type(self) -> None:
        otel.record_events("codex", ["assistant", "user", "assistant"], duration_ms=-3)

        self.events.otel.add.assert_any_call(2, {"provider": "codex", "event_type": "assistant"})
        self.events.otel.add.assert_any_call(1, {"provider": "codex", "event_type": "user"})
        self.events.prom.labels.assert_any_call(provider="codex", event_type="assistant")
        self.latency.otel.record.assert_called_once_with(0.0, {"provider": "codex"})

    def test_blank_labels_become_unknown(self) -> None:
        otel.record_events("", ["summary"], duration_ms=5)
        self.events.otel.add.assert_called_once_with(1, {"provider": "unknown", "event_type": "summary"})


class DisabledTelemetryTests(unittest.TestCase):
    def test_helpers_are_noops_without_backends(self) -> None:
        metric = otel._METRICS["sessionlens_truncations_total"]
        with patch.multiple(metric, otel=None, prom=None):
            otel.record_truncation("claude-code")
            otel.record_parser_failure("codex-rollout")

        with otel.start_span("sessions.read", {"provider": "codex"}) as span:
            self.assertIsNone(span)


if __name__ == "__main__":
    unittest.main()
