"""Tests for queuespine.logging: structlog configuration and context binding."""

import structlog
from structlog.testing import capture_logs

from queuespine.config import configure
from queuespine.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_from_settings,
    configure_logging,
    get_logger,
)


class TestConfigureLogging:
    def teardown_method(self):
        structlog.reset_defaults()

    def test_configures_structlog(self):
        configure_logging(level="DEBUG", json_format=True, service="test-service")
        assert structlog.is_configured()

    def test_configure_from_settings(self):
        configure(log_level="WARNING", log_format="json")
        configure_from_settings()
        assert structlog.is_configured()


class TestContext:
    def teardown_method(self):
        clear_context()

    def test_bind_and_clear(self):
        bind_context(queue="email")
        assert structlog.contextvars.get_contextvars() == {"queue": "email"}
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_log_context_scopes_keys(self):
        bind_context(service_run="r1")
        with LogContext(queue="email", job_id="j1"):
            assert structlog.contextvars.get_contextvars() == {
                "service_run": "r1",
                "queue": "email",
                "job_id": "j1",
            }
        assert structlog.contextvars.get_contextvars() == {"service_run": "r1"}

    def test_logger_emits_event(self):
        with capture_logs() as logs:
            get_logger("queuespine.test").info("job.started", queue="email")
        assert logs == [{"event": "job.started", "queue": "email", "log_level": "info"}]
