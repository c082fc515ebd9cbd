"""
Escrow job bodies and manager wiring
"""

import functools
import logging
from typing import Dict, Optional

from jobs.background_job_manager import BackgroundJobManager, JobBody, JobConfig, JobKind, JobResult
from services.escrow_service import EscrowService

logger = logging.getLogger(__name__)


async def run_rating_reminder(service: EscrowService, config: JobConfig) -> JobResult:
    summary = await service.send_rating_reminders(config.rating_deadline_days)
    if summary.failed:
        return JobResult(f"Sent {summary.sent} reminders with {summary.failed} errors", has_error=True)
    return JobResult(f"Successfully sent {summary.sent} rating reminders")


async def run_auto_release(service: EscrowService, config: JobConfig) -> JobResult:
    summary = await service.process_automatic_releases()
    await service.send_job_summary(summary)

    if summary.has_errors:
        return JobResult(
            f"Processed {summary.processed} releases, {summary.failed} failed (errors: {len(summary.errors)})",
            has_error=True,
        )
    return JobResult(f"Successfully processed {summary.processed} automatic releases")


async def run_dispute_escalation(service: EscrowService, config: JobConfig) -> JobResult:
    summary = await service.escalate_disputes(config.dispute_escalation_hours)
    if summary.failed:
        return JobResult(
            f"Escalated {summary.escalated} disputes, {summary.failed} failed", has_error=True
        )
    return JobResult(f"Escalated {summary.escalated} disputes")


def build_escrow_jobs(service: EscrowService) -> Dict[JobKind, JobBody]:
    return {
        JobKind.RATING_REMINDER: functools.partial(run_rating_reminder, service),
        JobKind.AUTO_RELEASE: functools.partial(run_auto_release, service),
        JobKind.DISPUTE_ESCALATION: functools.partial(run_dispute_escalation, service),
    }


def build_job_manager(service: EscrowService, config: Optional[JobConfig] = None) -> BackgroundJobManager:
    """Wire the escrow jobs into a manager whose config also drives new escrows"""
    manager = BackgroundJobManager(build_escrow_jobs(service), config=config)
    service.config_provider = lambda: manager.config
    return manager
