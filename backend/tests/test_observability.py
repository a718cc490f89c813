"""
Unit Tests for configuration, structured logging and error reporting

Run with: pytest tests/test_observability.py -v
"""

import asyncio
import json
import logging

import pytest

from config import Settings
from logging_config import JSONFormatter, SyncContextFilter, set_sync_domain
from sentry_integration import capture_sync_failure, filter_sensitive_data


def _record(message="hello", **extra):
    record = logging.LogRecord("tally.client", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSettings:

    def test_csv_lists(self, settings):
        assert "Pending Sales Bill" in settings.sales_voucher_types
        assert settings.receipt_voucher_types[0] == "Bank Receipt"
        assert settings.gateway_settlement_markers == ["FONEPAY", "ESEWASTLMT"]
        assert settings.tally_url == "http://localhost:9000"

    def test_production_rejects_sqlite(self):
        settings = Settings(_env_file=None, ENVIRONMENT="production")
        assert "DATABASE_URL should not use SQLite in production" in settings.validate_production_config()

    def test_negative_interval_rejected(self):
        settings = Settings(_env_file=None, SYNC_INTERVAL_MS=-1)
        assert "SYNC_INTERVAL_MS cannot be negative" in settings.validate_production_config()


class TestJSONFormatter:

    def test_extra_fields_nested(self):
        line = JSONFormatter(service_name="tally-sync").format(
            _record("Write attempt", event="tally.write_attempt", method="IMPORT_CREATE")
        )
        data = json.loads(line)

        assert data["message"] == "Write attempt"
        assert data["service"] == "tally-sync"
        assert data["extra"] == {"event": "tally.write_attempt", "method": "IMPORT_CREATE"}


class TestSyncContextFilter:

    def test_domain_stamped_on_records(self):
        set_sync_domain("vouchers")
        try:
            record = _record()
            SyncContextFilter().filter(record)
            assert record.sync_domain == "vouchers"
        finally:
            set_sync_domain(None)

    @pytest.mark.asyncio
    async def test_concurrent_tasks_keep_their_own_domain(self):
        seen = {}

        async def cycle(domain):
            set_sync_domain(domain)
            await asyncio.sleep(0)
            record = _record()
            SyncContextFilter().filter(record)
            seen[domain] = record.sync_domain

        await asyncio.gather(cycle("vouchers"), cycle("stock_items"))

        assert seen == {"vouchers": "vouchers", "stock_items": "stock_items"}


class TestSentry:

    def test_capture_is_noop_without_dsn(self):
        assert capture_sync_failure("vouchers", RuntimeError("boom"), cursor_before=10) is None

    def test_sensitive_extras_redacted(self):
        event = filter_sensitive_data({"extra": {"database_url": "postgresql://u:p@h/db", "cursor": 5}}, {})
        assert event["extra"] == {"database_url": "[REDACTED]", "cursor": 5}
