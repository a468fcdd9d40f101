"""
Exception Expiry Cron Job: Daily processing of tolerance exceptions.

Approved exceptions whose validity has ended are re-evaluated (resolved
if the value is back within limits, otherwise reopened), and hard-limit
breaches left past their grace period are reported.

Typical cron schedule: 0 6 * * * (daily at 6 AM)
"""

import asyncio
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ..core import get_settings
from ..services.escalation_engine import EscalationConfig, EscalationEngine, config_from_settings


logger = logging.getLogger(__name__)


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
    webhook_url: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """
    Send an alert about the job.

    The alert is always logged. When a webhook is configured (argument or
    CRON_ALERT_WEBHOOK_URL) it is also posted there; returns whether the
    post went through.
    """
    log_message = f"[CRON ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    elif severity == "warning":
        logger.warning(log_message)
    else:
        logger.error(log_message)

    webhook_url = webhook_url or get_settings().cron_alert_webhook_url
    if not webhook_url:
        return False

    payload = {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": "risk-register-cron",
        "details": details or {},
    }

    try:
        if client is not None:
            response = await client.post(webhook_url, json=payload, timeout=10)
        else:
            async with httpx.AsyncClient() as owned:
                response = await owned.post(webhook_url, json=payload, timeout=10)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Failed to send webhook alert: {e}")
        return False
    return True


# =============================================================================
# JOB
# =============================================================================


async def run_exception_expiry_job(
    database_url: str | None = None,
    escalation_config: EscalationConfig | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """
    Main entry point for the exception expiry job.

    This function:
    1. Expires lapsed tolerance exceptions (one transaction)
    2. Lists hard breaches past their grace period
    3. Alerts when overdue breaches exist or the job fails

    Args:
        database_url: async connection string; used when no session_factory is given
        escalation_config: grace period and role configuration
        session_factory: existing session factory to run against

    Returns:
        Job result summary
    """
    start_time = datetime.now(timezone.utc)
    logger.info(f"Starting exception expiry job at {start_time.isoformat()}")

    engine = None
    if session_factory is None:
        engine = create_async_engine(database_url or get_settings().database_url_async)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)

    config = escalation_config or config_from_settings()
    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "expired_count": 0,
        "reopened_count": 0,
        "resolved_count": 0,
        "overdue_hard_breaches": [],
        "errors": [],
    }

    try:
        async with session_factory() as session:
            async with session.begin():
                escalation = EscalationEngine(session, config=config)

                stats = await escalation.expire_exceptions()
                results["expired_count"] = stats.expired
                results["reopened_count"] = stats.reopened
                results["resolved_count"] = stats.resolved

                logger.info(
                    f"Exception expiry: {stats.expired} expired, "
                    f"{stats.reopened} reopened, {stats.resolved} resolved"
                )

                overdue = await escalation.list_overdue_hard_breaches()
                results["overdue_hard_breaches"] = [
                    {
                        "breach_id": str(o.breach.id),
                        "organization_id": str(o.breach.organization_id),
                        "limit_name": o.limit_name,
                        "days_open": o.days_open,
                        "grace_days": o.grace_days,
                    }
                    for o in overdue
                ]

    except Exception as e:
        error_msg = f"Exception expiry job failed: {e}"
        logger.error(error_msg)
        results["errors"].append(error_msg)

        await send_alert(
            title="Exception Expiry Job Failed",
            message="The daily tolerance exception job crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],
                "started_at": results["started_at"],
            },
        )
        raise

    finally:
        if engine is not None:
            await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Exception expiry job completed in {results['duration_seconds']:.2f}s: "
        f"{results['expired_count']} expired, "
        f"{len(results['overdue_hard_breaches'])} overdue hard breaches"
    )

    if results["overdue_hard_breaches"]:
        await send_alert(
            title="Hard Limit Breaches Past Grace Period",
            message=(
                f"{len(results['overdue_hard_breaches'])} hard-limit breaches have no "
                f"approved exception and are past their grace period."
            ),
            severity="warning",
            details={"breaches": results["overdue_hard_breaches"][:5]},
        )

    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the exception expiry job."""
    import argparse

    parser = argparse.ArgumentParser(description="Run the tolerance exception expiry job")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to DATABASE_URL)",
    )
    parser.add_argument(
        "--grace-days",
        type=int,
        default=None,
        help="Default grace period for hard breaches without an exception",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = config_from_settings()
    if args.grace_days is not None:
        config.default_grace_days = args.grace_days

    database_url = args.database_url
    if database_url and database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    try:
        results = asyncio.run(
            run_exception_expiry_job(database_url=database_url, escalation_config=config)
        )
        logger.info(f"Job completed: {results}")
    except Exception as e:
        logger.error(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
