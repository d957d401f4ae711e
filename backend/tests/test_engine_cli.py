# Overview: Pytest coverage for the Flask host (create_app) and the store maintenance CLI commands.

import pytest

from pipeflow import create_app
from pipeflow.extensions import EXTENSION_KEY, store_engine


@pytest.fixture
def make_app(tmp_path):
    apps = []

    def factory(**overrides):
        config = {
            "TESTING": True,
            "DATABASE_URL": f"sqlite:///{tmp_path / 'store.sqlite3'}",
            "FALLBACK_STORE_PATH": str(tmp_path / "fallback.json"),
        }
        config.update(overrides)
        app = create_app(config)
        apps.append(app)
        return app

    yield factory
    for app in apps:
        app.extensions[EXTENSION_KEY].close()


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


class TestCreateApp:
    """create_app selects the backend and migrates before anything else runs."""

    def test_engine_is_registered(self, app):
        engine = app.extensions[EXTENSION_KEY]
        status = engine.get_database_status()
        assert status["backend"] == "relational"
        assert status["schema"]["up_to_date"] is True
        assert status["counts"] == {"inventory_items": 0, "customers": 0, "sales": 0, "sale_lines": 0}

    def test_engine_reachable_from_app_context(self, app):
        with app.app_context():
            assert store_engine.engine is app.extensions[EXTENSION_KEY]

    def test_forced_fallback(self, make_app):
        app = make_app(FORCE_FALLBACK=True)
        assert app.extensions[EXTENSION_KEY].get_database_status()["backend"] == "fallback"


class TestStoreCommands:
    """flask store ..."""

    def test_status(self, runner):
        result = runner.invoke(args=["store", "status"])
        assert result.exit_code == 0
        assert "PASS Backend: relational" in result.output
        assert "PASS Schema version 6 (latest)" in result.output
        assert "inventory_items: 0" in result.output

    def test_status_on_fallback_warns(self, make_app):
        runner = make_app(FORCE_FALLBACK=True).test_cli_runner()
        result = runner.invoke(args=["store", "status"])
        assert "WARN  Backend: fallback" in result.output
        assert "FORCE_FALLBACK" in result.output

    def test_migrate_is_a_no_op_after_startup(self, runner):
        result = runner.invoke(args=["store", "migrate"])
        assert "PASS Schema already up to date" in result.output

    def test_import_without_a_file_fails_cleanly(self, runner):
        result = runner.invoke(args=["store", "import-fallback"])
        assert result.exit_code == 0
        assert result.output.startswith("FAIL")


class TestMaintenanceCommands:
    """customers / inventory / sales groups."""

    def test_low_stock(self, app, runner):
        assert "PASS No items below threshold" in runner.invoke(args=["inventory", "low-stock"]).output

        app.extensions[EXTENSION_KEY].add_inventory_item({"id": "A", "description": "Board", "quantity": 1})
        result = runner.invoke(args=["inventory", "low-stock"])
        assert "WARN  A  Board  qty=1 (alert at 10)" in result.output

    def test_customers_recompute(self, app, runner):
        result = runner.invoke(args=["customers", "recompute"])
        assert "PASS Repaired 0 customer(s)" in result.output

        result = runner.invoke(args=["customers", "recompute", "--id", "ghost"])
        assert result.output.startswith("FAIL")

    def test_sales_report(self, app, runner):
        engine = app.extensions[EXTENSION_KEY]
        engine.add_inventory_item({"id": "A", "description": "Board", "quantity": 5, "selling_price_cents": 1500})
        sale = engine.record_sale({"lines": [{"product_id": "A", "quantity": 2}]})
        day = sale["sold_at"][:10]

        result = runner.invoke(args=["sales", "report", "--start", day, "--end", day])
        assert "Sales: 1  Revenue: 30.00" in result.output
        assert day in result.output

    def test_sales_report_rejects_bad_range(self, runner):
        result = runner.invoke(args=["sales", "report", "--start", "2026-03-02", "--end", "2026-03-01"])
        assert result.output.startswith("FAIL")
