# src/registry/reports.py — v1
"""Error reports and per-scan logs, plus the aggregate error statistics."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable

from shelfscan.core.errors import ErrorCode
from shelfscan.core.models import ErrorReport, ErrorStats, ScanLog, utcnow
from shelfscan.registry.database import RegistryDatabase, registry_errors, to_db_time

logger = logging.getLogger(__name__)


class ScanLedger:
    def __init__(self, db: RegistryDatabase, clock: Callable[[], datetime] = utcnow) -> None:
        self._conn = db.conn
        self._clock = clock

    async def save_error_report(self, report: ErrorReport) -> str:
        """Persist a user error report and return its id."""
        report_id = str(uuid.uuid4())
        product_id = report.incorrect_product.id or None
        with registry_errors(ErrorCode.REPORT_SAVE_FAILED, product_id=product_id):
            with self._conn:
                self._conn.execute(
                    """INSERT INTO error_reports
                       (id, product_id, barcode, image_fingerprint, tier,
                        user_feedback, user_id, session_id, status, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)""",
                    (
                        report_id,
                        product_id,
                        report.barcode,
                        report.image_fingerprint,
                        report.tier,
                        report.user_feedback,
                        report.user_id,
                        report.session_id,
                        to_db_time(self._clock()),
                    ),
                )
        logger.info("Saved error report %s for product %s", report_id, product_id)
        return report_id

    async def record_scan_log(self, log: ScanLog) -> None:
        with registry_errors(ErrorCode.REGISTRY_QUERY_FAILED, user_id=log.user_id):
            with self._conn:
                self._conn.execute(
                    """INSERT INTO scan_logs
                       (user_id, session_id, tier, success, cached, product_id, barcode,
                        image_fingerprint, confidence, processing_time_ms, error_code, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        log.user_id,
                        log.session_id,
                        log.tier,
                        int(log.success),
                        int(log.cached),
                        log.product_id,
                        log.barcode,
                        log.image_fingerprint,
                        log.confidence,
                        log.processing_time_ms,
                        log.error_code,
                        to_db_time(self._clock()),
                    ),
                )

    async def get_error_stats(self) -> ErrorStats:
        """Report counts by tier and the report-to-scan ratio."""
        with registry_errors(ErrorCode.REGISTRY_QUERY_FAILED):
            by_tier = self._conn.execute(
                """SELECT COALESCE(CAST(tier AS TEXT), 'unknown') AS tier_key, COUNT(*) AS n
                   FROM error_reports GROUP BY tier_key"""
            ).fetchall()
            total_scans = self._conn.execute("SELECT COUNT(*) FROM scan_logs").fetchone()[0]
            flagged = self._conn.execute(
                "SELECT COUNT(*) FROM products WHERE flagged_for_review = 1"
            ).fetchone()[0]

        reports_by_tier = {row["tier_key"]: row["n"] for row in by_tier}
        total_reports = sum(reports_by_tier.values())
        return ErrorStats(
            total_reports=total_reports,
            reports_by_tier=reports_by_tier,
            total_scans=total_scans,
            error_rate=total_reports / total_scans if total_scans else 0.0,
            flagged_products=flagged,
        )
