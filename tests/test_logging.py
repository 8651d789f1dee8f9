"""
Tests for the structured logging helpers.
"""
import pytest

from payment_relay.config import Settings
from payment_relay.monitoring.logging import app_context, build_processors


class TestAppContext:
    """Tests for the app context processor."""

    @pytest.mark.unit
    def test_stamps_app_name_and_env(self, test_settings: Settings) -> None:
        event = app_context(test_settings)(None, "info", {"event": "outbox_batch_processed"})

        assert event["app_name"] == "payment-relay-test"
        assert event["app_env"] == "test"

    @pytest.mark.unit
    def test_keeps_explicit_fields(self, test_settings: Settings) -> None:
        event = app_context(test_settings)(None, "info", {"event": "x", "app_env": "canary"})
        assert event["app_env"] == "canary"

    @pytest.mark.unit
    def test_json_renderer_is_last(self, test_settings: Settings) -> None:
        processors = build_processors(test_settings)
        rendered = processors[-1](None, "info", {"event": "x", "order_code": "ORD-1001"})

        assert '"order_code": "ORD-1001"' in rendered
