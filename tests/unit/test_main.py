# tests/unit/test_main.py — v2
"""Tests for main.py — CLI entry point."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shelfscan.config.settings import ConfigurationError
from shelfscan.core.errors import ErrorCode, ErrorSource, OrchestratorError
from shelfscan.core.models import (
    ErrorReportResponse,
    ErrorStats,
    ProductSnapshot,
    ScanAnalysis,
    ScanResult,
)
from shelfscan.core.outcome import Failed, Ok
from shelfscan.main import _build_parser, _load_image, main


# ---------------------------------------------------------------------------
# Parser tests
# ---------------------------------------------------------------------------

class TestBuildParser:
    def test_version_flag(self):
        parser = _build_parser()
        with pytest.raises(SystemExit) as exc_info:
            parser.parse_args(["--version"])
        assert exc_info.value.code == 0

    def test_scan_subcommand(self):
        args = _build_parser().parse_args(
            ["scan", "--barcode", "012345678901", "--lat", "37.77", "--lon", "-122.41"]
        )
        assert args.command == "scan"
        assert args.barcode == "012345678901"
        assert args.lat == 37.77
        assert args.lon == -122.41
        assert args.user == "anonymous"
        assert args.insights is True

    def test_scan_without_insights(self):
        assert _build_parser().parse_args(["scan", "--barcode", "B1", "--no-insights"]).insights is False

    def test_scan_image(self):
        args = _build_parser().parse_args(["scan", "--image", "photo.jpg"])
        assert args.image == Path("photo.jpg")
        assert args.barcode is None

    def test_report_error_requires_product(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["report-error", "--name", "Organic Milk"])

    def test_report_error_subcommand(self):
        args = _build_parser().parse_args(
            ["report-error", "--product-id", "P1", "--name", "Organic Milk", "--tier", "4"]
        )
        assert args.product_id == "P1"
        assert args.tier == 4
        assert args.brand == ""

    def test_cache_actions(self):
        args = _build_parser().parse_args(["cache", "invalidate", "--product-id", "P1"])
        assert args.action == "invalidate"
        assert args.product_id == "P1"
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["cache", "compact"])

    def test_cache_invalidate_insights(self):
        args = _build_parser().parse_args(["cache", "invalidate-insights", "--product-id", "P1,P2"])
        assert args.action == "invalidate-insights"
        assert args.product_id == "P1,P2"

    def test_flagged_default_limit(self):
        assert _build_parser().parse_args(["flagged"]).limit == 50


class TestLoadImage:
    def test_media_type_from_suffix(self, tmp_path):
        path = tmp_path / "shelf.png"
        path.write_bytes(b"\x89PNG")
        image = _load_image(path)
        assert image.media_type == "image/png"
        assert image.data == b"\x89PNG"

    def test_unknown_suffix_defaults_to_jpeg(self, tmp_path):
        path = tmp_path / "capture"
        path.write_bytes(b"\xff\xd8")
        assert _load_image(path).media_type == "image/jpeg"

    def test_none(self):
        assert _load_image(None) is None


# ---------------------------------------------------------------------------
# Command execution with patched services
# ---------------------------------------------------------------------------

def _services() -> MagicMock:
    services = MagicMock()
    services.aclose = AsyncMock()
    return services


@pytest.fixture
def run_cli(tmp_path, monkeypatch):
    """Run main() with temp settings and the given services."""
    monkeypatch.chdir(tmp_path)

    def _run(argv: list[str], services: MagicMock) -> int:
        with patch("shelfscan.api.facade.build_services", return_value=services), patch(
            "shelfscan.logging.logger.setup_logging"
        ):
            return main(argv)

    return _run


class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_configuration_error(self, capsys):
        with patch("shelfscan.config.settings.load_settings", side_effect=ConfigurationError("bad")):
            assert main(["error-stats"]) == 2
        assert "Configuration error: bad" in capsys.readouterr().err

    def test_scan_prints_result(self, run_cli, capsys):
        services = _services()
        services.orchestrator.process_scan = AsyncMock(
            return_value=ScanResult(
                from_cache=True,
                product=ProductSnapshot(id="P1", name="Organic Milk"),
                analysis=ScanAnalysis(tier=1, confidence=1.0, processing_time_ms=3),
            )
        )
        assert run_cli(["scan", "--barcode", "012345678901", "--lat", "1", "--lon", "2"], services) == 0

        request = services.orchestrator.process_scan.await_args.args[0]
        assert request.barcode == "012345678901"
        assert request.location.latitude == 1.0
        assert request.include_insights is True
        assert json.loads(capsys.readouterr().out)["product"]["id"] == "P1"
        services.aclose.assert_awaited_once()

    def test_scan_retake_exit_code(self, run_cli):
        services = _services()
        services.orchestrator.process_scan = AsyncMock(
            return_value=ScanResult(
                from_cache=False,
                analysis=ScanAnalysis(tier=4, confidence=0.4, processing_time_ms=9, retake_required=True),
            )
        )
        assert run_cli(["scan", "--fingerprint", "F1"], services) == 3

    def test_scan_error_is_printed(self, run_cli, capsys):
        services = _services()
        services.orchestrator.process_scan = AsyncMock(
            side_effect=OrchestratorError(
                ErrorCode.NO_PRODUCTS_FOUND, "nothing", ErrorSource.IDENTIFICATION_PIPELINE
            )
        )
        assert run_cli(["scan", "--barcode", "B1"], services) == 1
        assert json.loads(capsys.readouterr().out)["error"]["code"] == ErrorCode.NO_PRODUCTS_FOUND

    def test_report_error(self, run_cli):
        services = _services()
        services.orchestrator.report_error = AsyncMock(
            return_value=ErrorReportResponse(success=True, report_id="R1")
        )
        assert run_cli(["report-error", "--product-id", "P1", "--name", "Organic Milk", "--barcode", "B1"], services) == 0
        report = services.orchestrator.report_error.await_args.args[0]
        assert report.incorrect_product.id == "P1"
        assert report.barcode == "B1"

    def test_cache_invalidate_sums_removed(self, run_cli, capsys):
        services = _services()
        services.cache.invalidate = AsyncMock(return_value=Ok(True))
        services.cache.invalidate_by_product_id = AsyncMock(return_value=Ok(2))
        assert run_cli(["cache", "invalidate", "--barcode", "B1", "--product-id", "P1"], services) == 0
        assert "Removed 3 entries" in capsys.readouterr().out

    def test_cache_invalidate_needs_target(self, run_cli):
        assert run_cli(["cache", "invalidate"], _services()) == 2

    def test_scan_no_insights_reaches_request(self, run_cli):
        services = _services()
        services.orchestrator.process_scan = AsyncMock(
            return_value=ScanResult(
                from_cache=False,
                product=ProductSnapshot(id="P1", name="Organic Milk"),
                analysis=ScanAnalysis(tier=4, confidence=0.9, processing_time_ms=12),
            )
        )
        assert run_cli(["scan", "--barcode", "B1", "--no-insights"], services) == 0
        assert services.orchestrator.process_scan.await_args.args[0].include_insights is False

    def test_cache_invalidate_insights(self, run_cli, capsys):
        services = _services()
        services.cache.invalidate_insights = AsyncMock(return_value=Ok(2))
        assert run_cli(["cache", "invalidate-insights", "--product-id", "P1, P2,,P3"], services) == 0
        assert services.cache.invalidate_insights.await_args.args[0] == ["P1", "P2", "P3"]
        assert "Removed insights for 2 products" in capsys.readouterr().out

    def test_cache_invalidate_insights_needs_product(self, run_cli):
        services = _services()
        services.cache.invalidate_insights = AsyncMock(return_value=Ok(0))
        assert run_cli(["cache", "invalidate-insights"], services) == 2
        services.cache.invalidate_insights.assert_not_awaited()

    def test_cache_invalidate_insights_failure(self, run_cli):
        services = _services()
        services.cache.invalidate_insights = AsyncMock(return_value=Failed(ConnectionError("refused")))
        assert run_cli(["cache", "invalidate-insights", "--product-id", "P1"], services) == 1

    def test_error_stats(self, run_cli, capsys):
        services = _services()
        services.ledger.get_error_stats = AsyncMock(
            return_value=ErrorStats(
                total_reports=2, reports_by_tier={"4": 2}, total_scans=4, error_rate=0.5, flagged_products=1
            )
        )
        assert run_cli(["error-stats"], services) == 0
        assert json.loads(capsys.readouterr().out)["error_rate"] == 0.5

    def test_unexpected_failure_returns_one(self, run_cli):
        services = _services()
        services.products.get_flagged_products = AsyncMock(side_effect=RuntimeError("boom"))
        assert run_cli(["flagged"], services) == 1
        services.aclose.assert_awaited_once()
