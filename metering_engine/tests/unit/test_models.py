"""Unit tests for the engine models, calendar helpers and settings."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pydantic
import pytest
from metering_engine.config import load_settings
from metering_engine.errors import InvalidInvoiceTransitionError, PlanNotFoundError
from metering_engine.metering.periods import add_interval, ensure_utc, month_bounds, reset_window
from metering_engine.models.billing import DateRange, InvoiceStatus
from metering_engine.models.plan import BillingInterval, UsageLimitTemplate
from metering_engine.models.usage import (
    UNLIMITED,
    AlertSeverity,
    ResetPeriod,
    UsageEvent,
    UsageLimit,
)

# ---------------------------------------------------------------------------
# Calendar math
# ---------------------------------------------------------------------------


class TestPeriods:
    def test_month_bounds(self):
        start, end = month_bounds(datetime(2026, 2, 14, 13, 30, tzinfo=UTC))
        assert start == datetime(2026, 2, 1, tzinfo=UTC)
        assert end == datetime(2026, 3, 1, tzinfo=UTC)

    def test_month_bounds_december_rolls_year(self):
        start, end = month_bounds(datetime(2025, 12, 31, 23, 59, tzinfo=UTC))
        assert start == datetime(2025, 12, 1, tzinfo=UTC)
        assert end == datetime(2026, 1, 1, tzinfo=UTC)

    def test_month_bounds_uses_utc(self):
        # 2026-03-01 01:00 at UTC+2 is still February in UTC.
        local = datetime(2026, 3, 1, 1, 0, tzinfo=timezone(timedelta(hours=2)))
        start, _ = month_bounds(local)
        assert start == datetime(2026, 2, 1, tzinfo=UTC)

    def test_daily_and_weekly_windows(self):
        at = datetime(2026, 10, 15, 18, 0, tzinfo=UTC)  # a Thursday
        day_start, day_end = reset_window(ResetPeriod.DAILY, at)
        assert day_start == datetime(2026, 10, 15, tzinfo=UTC)
        assert day_end - day_start == timedelta(days=1)

        week_start, week_end = reset_window(ResetPeriod.WEEKLY, at)
        assert week_start == datetime(2026, 10, 12, tzinfo=UTC)
        assert week_start.weekday() == 0
        assert week_end == datetime(2026, 10, 19, tzinfo=UTC)

    def test_yearly_window(self):
        start, end = reset_window(ResetPeriod.YEARLY, datetime(2026, 7, 4, tzinfo=UTC))
        assert start == datetime(2026, 1, 1, tzinfo=UTC)
        assert end == datetime(2027, 1, 1, tzinfo=UTC)

    def test_add_interval_clamps_day_of_month(self):
        assert add_interval(datetime(2026, 1, 31, tzinfo=UTC), BillingInterval.MONTH) == datetime(
            2026, 2, 28, tzinfo=UTC
        )
        assert add_interval(datetime(2024, 2, 29, tzinfo=UTC), BillingInterval.YEAR) == datetime(
            2025, 2, 28, tzinfo=UTC
        )

    def test_ensure_utc_assumes_naive_is_utc(self):
        assert ensure_utc(datetime(2026, 1, 1)).tzinfo is UTC


# ---------------------------------------------------------------------------
# Usage models
# ---------------------------------------------------------------------------


class TestUsageModels:
    def test_negative_quantity_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            UsageEvent(organization_id="org-1", metric_id="api_calls", quantity=-1)

    def test_event_defaults(self):
        event = UsageEvent(organization_id="org-1", metric_id="api_calls", quantity=1.5)
        assert event.event_id.startswith("evt-")
        assert event.timestamp.tzinfo is not None
        assert event.idempotency_key is None

    def test_naive_timestamp_normalised(self):
        event = UsageEvent(
            organization_id="org-1",
            metric_id="api_calls",
            quantity=1,
            timestamp=datetime(2026, 5, 1, 12, 0),
        )
        assert event.timestamp == datetime(2026, 5, 1, 12, 0, tzinfo=UTC)

    def test_limit_thresholds_sorted_and_deduplicated(self):
        limit = UsageLimit(
            organization_id="org-1",
            metric_id="api_calls",
            limit_value=100,
            thresholds=[100, 50, 80, 50],
        )
        assert limit.thresholds == [50, 80, 100]

    @pytest.mark.parametrize("thresholds", [[0, 80], [80, 150], [-10]])
    def test_thresholds_outside_percentage_range_rejected(self, thresholds):
        with pytest.raises(pydantic.ValidationError):
            UsageLimit(organization_id="org-1", metric_id="api_calls", limit_value=100, thresholds=thresholds)

    def test_plan_limit_template_thresholds_validated(self):
        with pytest.raises(pydantic.ValidationError):
            UsageLimitTemplate(metric_id="api_calls", limit_value=100, thresholds=[120])
        assert UsageLimitTemplate(metric_id="api_calls", thresholds=[100, 80]).thresholds == [80, 100]

    def test_unlimited_sentinel(self):
        limit = UsageLimit(organization_id="org-1", metric_id="api_calls", limit_value=UNLIMITED)
        assert limit.is_unlimited

    @pytest.mark.parametrize("value", [0, -5])
    def test_non_positive_limit_rejected(self, value):
        with pytest.raises(pydantic.ValidationError):
            UsageLimit(organization_id="org-1", metric_id="api_calls", limit_value=value)

    @pytest.mark.parametrize(
        ("percentage", "expected"),
        [
            (100.0, AlertSeverity.CRITICAL),
            (95.0, AlertSeverity.CRITICAL),
            (94.99, AlertSeverity.WARNING),
            (80.0, AlertSeverity.WARNING),
            (79.9, AlertSeverity.INFO),
        ],
    )
    def test_severity_for_percentage(self, percentage, expected):
        assert AlertSeverity.for_percentage(percentage) is expected


# ---------------------------------------------------------------------------
# Billing models
# ---------------------------------------------------------------------------


class TestBillingModels:
    def test_date_range_must_be_ordered(self):
        moment = datetime(2026, 1, 1, tzinfo=UTC)
        with pytest.raises(pydantic.ValidationError):
            DateRange(start=moment, end=moment)

    @pytest.mark.parametrize(
        ("current", "target", "allowed"),
        [
            (InvoiceStatus.DRAFT, InvoiceStatus.OPEN, True),
            (InvoiceStatus.DRAFT, InvoiceStatus.PAID, False),
            (InvoiceStatus.OPEN, InvoiceStatus.PAID, True),
            (InvoiceStatus.OPEN, InvoiceStatus.VOID, True),
            (InvoiceStatus.PAID, InvoiceStatus.VOID, False),
            (InvoiceStatus.VOID, InvoiceStatus.OPEN, False),
        ],
    )
    def test_invoice_transitions(self, current, target, allowed):
        assert current.can_transition_to(target) is allowed


class TestErrorsAndSettings:
    def test_not_found_message(self):
        exc = PlanNotFoundError("pro-2026")
        assert exc.identifier == "pro-2026"
        assert str(exc) == "Plan not found: pro-2026"

    def test_transition_error_attributes(self):
        exc = InvalidInvoiceTransitionError("inv-1", "paid", "void")
        assert (exc.current, exc.target) == ("paid", "void")

    def test_settings_defaults_and_overrides(self):
        settings = load_settings(invoice_due_days=14)
        assert settings.invoice_due_days == 14
        assert settings.invoice_number_prefix == "INV"
        assert settings.upgrade_lookback_days == 30

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv("METERING_ANOMALY_Z_SCORE", "3.5")
        assert load_settings().anomaly_z_score == 3.5
