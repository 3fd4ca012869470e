"""Tests for the logging manager."""

import logging
from unittest.mock import patch

from syncmeet.managers import logging_manager
from syncmeet.managers.logging_manager import APP_LOGGER_NAME, PrefixFilter, get_logger


class TestPrefixFilter:
    """Test message prefixing."""

    def test_prefix_applied_once(self):
        """Test that the prefix is added and not repeated on a second pass."""
        prefix_filter = PrefixFilter("[Relay-Router]")
        record = logging.LogRecord("SyncMeet", logging.INFO, __file__, 1, "relayed offer", None, None)

        prefix_filter.filter(record)
        prefix_filter.filter(record)

        assert record.getMessage() == "[Relay-Router] relayed offer"

    def test_empty_prefix(self):
        """Test that an empty prefix leaves the message alone."""
        record = logging.LogRecord("SyncMeet", logging.INFO, __file__, 1, "hello", None, None)

        assert PrefixFilter("").filter(record) is True
        assert record.getMessage() == "hello"


class TestGetLogger:
    """Test logger construction."""

    def test_prefixed_logger_is_child(self):
        """Test that prefixed loggers hang off the application logger."""
        logger = get_logger(prefix="[Signaling-Hub]", add_loki=False)

        assert logger.name == f"{APP_LOGGER_NAME}.Signaling-Hub"
        assert logger.parent is logging.getLogger(APP_LOGGER_NAME)
        assert sum(isinstance(f, PrefixFilter) for f in logger.filters) == 1

    def test_repeated_calls_do_not_duplicate(self):
        """Test that handlers and filters are attached once."""
        get_logger(prefix="[Admission]", add_loki=False)
        handler_count = len(logging.getLogger(APP_LOGGER_NAME).handlers)

        logger = get_logger(prefix="[Admission]", add_loki=False)

        assert len(logging.getLogger(APP_LOGGER_NAME).handlers) == handler_count
        assert len(logger.filters) == 1

    def test_prefixed_message(self, caplog):
        """Test that records carry the component prefix."""
        logger = get_logger(prefix="[Room-Directory]", add_loki=False)

        with caplog.at_level(logging.INFO, logger=APP_LOGGER_NAME):
            logger.info("created room R1")

        assert "[Room-Directory] created room R1" in caplog.messages

    def test_loki_handler_attached_when_enabled(self):
        """Test that Loki is attached through LokiLoggerHandler when requested."""
        app_logger = logging.getLogger(APP_LOGGER_NAME)
        existing = list(app_logger.handlers)

        class StubLokiHandler(logging.Handler):
            def __init__(self, **kwargs):
                super().__init__()
                self.kwargs = kwargs

            def emit(self, record):
                pass

        with patch.object(logging_manager, "LokiLoggerHandler", StubLokiHandler):
            get_logger(add_loki=True)
            added = [h for h in app_logger.handlers if isinstance(h, StubLokiHandler)]

        try:
            assert len(added) == 1
            assert added[0].kwargs["labels"]["app"]
        finally:
            app_logger.handlers[:] = existing
