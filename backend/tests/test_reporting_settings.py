# Overview: Pytest coverage for persisted settings and the sales report.

from datetime import timedelta

import pytest

from pipeflow.engine import StoreEngine
from pipeflow.errors import ValidationError
from pipeflow.services.sequence_service import format_document_number
from pipeflow.services.settings_service import DEFAULT_SETTINGS, normalize_setting

from conftest import make_backend


# ============================================================================
# Settings
# ============================================================================

class TestSettings:
    """Seeded defaults, validation and persistence."""

    def test_defaults_are_seeded(self, engine):
        assert engine.get_settings() == DEFAULT_SETTINGS

    def test_update_returns_everything_and_persists(self, engine, backend_kind, tmp_path, clock, bus):
        result = engine.update_settings({"company_name": "Juma Hardware", "alert_threshold": "5", "language": "sw"})
        assert result["company_name"] == "Juma Hardware"
        assert result["alert_threshold"] == 5
        assert result["currency"] == "TZS"
        engine.close()

        reopened = StoreEngine(make_backend(backend_kind, tmp_path), bus=bus, clock=clock)
        try:
            assert reopened.get_settings()["company_name"] == "Juma Hardware"
            assert reopened.get_settings()["language"] == "sw"
        finally:
            reopened.close()

    @pytest.mark.parametrize("patch", [
        {},
        {"theme": "dark"},
        {"currency": "usd"},
        {"language": "fr"},
        {"alert_threshold": -1},
        {"alert_threshold": "ten"},
        {"invoice_prefix": "INV 2026"},
        {"invoice_start": 0},
        {"company_name": None},
    ])
    def test_invalid_updates(self, engine, patch):
        with pytest.raises(ValidationError):
            engine.update_settings(patch)
        assert engine.get_settings() == DEFAULT_SETTINGS

    def test_normalize_setting(self):
        assert normalize_setting("company_name", "  Juma  ") == "Juma"
        assert normalize_setting("invoice_start", "2000") == 2000
        with pytest.raises(ValidationError):
            normalize_setting("invoice_start", True)

    def test_document_number_format(self):
        assert format_document_number("INV", 1000) == "INV-1000"


# ============================================================================
# Sales report
# ============================================================================

@pytest.fixture
def trading(stocked, clock):
    stocked.record_sale({
        "sold_at": clock() - timedelta(days=1),
        "payment_method": "cash",
        "lines": [{"product_id": "A", "quantity": 2}],
    })
    stocked.record_sale({"payment_method": "card", "lines": [{"product_id": "B", "quantity": 1}]})
    stocked.record_sale({
        "payment_method": "mobile money",
        "lines": [{"description": "Delivery", "quantity": 1, "unit_price_cents": 2000}],
    })
    return stocked


class TestSalesReport:
    """Summary, grouping and range handling."""

    def test_daily_report(self, trading):
        report = trading.get_sales_report("2026-03-01", "2026-03-02")
        summary = report["summary"]

        assert summary["sales_count"] == 3
        assert summary["items_sold"] == 4
        assert summary["revenue_cents"] == 5400
        assert summary["estimated_cost_cents"] == 2250
        assert summary["estimated_profit_cents"] == 3150
        assert summary["average_sale_cents"] == 1800
        assert summary["first_sale_at"] == "2026-03-01T09:00:00Z"
        assert summary["last_sale_at"] == "2026-03-02T09:00:00Z"

        assert [(row["period"], row["sales_count"], row["revenue_cents"]) for row in report["data"]] == [
            ("2026-03-01", 1, 3000),
            ("2026-03-02", 2, 2400),
        ]
        assert report["by_payment_method"] == {
            "cash": {"sales_count": 1, "revenue_cents": 3000},
            "card": {"sales_count": 1, "revenue_cents": 400},
            "mobile_money": {"sales_count": 1, "revenue_cents": 2000},
        }
        assert [p["description"] for p in report["top_products"]] == ["Ceiling board 8ft", "Delivery", "Wall paint 4L"]

    def test_monthly_grouping(self, trading):
        report = trading.get_sales_report("2026-03-01", "2026-03-31", group_by="month")
        assert [(row["period"], row["sales_count"]) for row in report["data"]] == [("2026-03", 3)]

    def test_range_excludes_outside_sales(self, trading):
        report = trading.get_sales_report("2026-03-02T00:00:00Z", "2026-03-02T23:59:59Z")
        assert report["summary"]["sales_count"] == 2

    def test_empty_range(self, trading):
        report = trading.get_sales_report("2025-01-01", "2025-01-31")
        assert report["summary"]["sales_count"] == 0
        assert report["summary"]["average_sale_cents"] == 0
        assert report["data"] == []

    @pytest.mark.parametrize("start,end,group_by", [
        ("2026-03-02", "2026-03-01", "day"),
        (None, "2026-03-01", "day"),
        ("yesterday", "2026-03-01", "day"),
        ("2026-03-01", "2026-03-02", "year"),
    ])
    def test_invalid_requests(self, trading, start, end, group_by):
        with pytest.raises(ValidationError):
            trading.get_sales_report(start, end, group_by=group_by)
