import json
import logging

from wa_control.logging_config import (
    ContextLogger,
    JSONFormatter,
    TextFormatter,
    get_logger,
    mask_phone,
    setup_logging,
)


def _record(**extra):
    record = logging.LogRecord("wa_control.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_correlation_fields_are_top_level(self):
        record = _record(context={"phone": "5548999990000", "channel": "relay", "minutes_waiting": 31})

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["phone"] == "5548999990000"
        assert data["channel"] == "relay"
        assert data["context"] == {"minutes_waiting": 31}

    def test_context_omitted_when_only_correlation(self):
        data = json.loads(JSONFormatter().format(_record(context={"wa_message_id": "wamid.ABC"})))

        assert data["wa_message_id"] == "wamid.ABC"
        assert "context" not in data

    def test_context_omitted_when_absent(self):
        assert "context" not in json.loads(JSONFormatter().format(_record()))

    def test_masks_phone_fields(self):
        record = _record(context={"phone": "5548999990000", "wa_to": "5548988880000"})

        data = json.loads(JSONFormatter(mask_phones=True).format(record))

        assert data["phone"] == "*********0000"
        assert data["context"]["wa_to"] == "*********0000"


class TestTextFormatter:
    def test_single_line_with_fields(self):
        line = TextFormatter().format(_record(context={"phone": "5548999990000", "error": "HTTP 500"}))
        assert line == "INFO wa_control.test hello world phone=5548999990000 error=HTTP 500"


class TestSetupLogging:
    def test_text_format_selected(self):
        setup_logging("DEBUG", log_format="text")
        try:
            handler = logging.getLogger().handlers[0]
            assert isinstance(handler.formatter, TextFormatter)
            assert logging.getLogger().level == logging.DEBUG
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            setup_logging("INFO")


class TestContextLogger:
    def test_merges_fixed_and_call_context(self):
        adapter = ContextLogger(get_logger("test"), {"phone": "5548999990000"})

        msg, kwargs = adapter.process("released", {"context": {"minutes_waiting": 31}})

        assert msg == "released"
        assert kwargs["extra"] == {"context": {"phone": "5548999990000", "minutes_waiting": 31}}

    def test_logger_names_are_prefixed(self):
        assert get_logger("reconciler").name == "wa_control.reconciler"


def test_mask_phone_leaves_short_values():
    assert mask_phone("123") == "123"
    assert mask_phone(None) is None
