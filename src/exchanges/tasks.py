"""
Celery tasks for the exchange workflow.
"""

import logging

from celery import shared_task

from .services.deadline_scheduler import DeadlineScheduler

logger = logging.getLogger(__name__)


@shared_task
def scan_exchange_deadlines():
    """
    Run one deadline scheduler tick.

    Scheduled by celery beat; safe to overlap with a slow previous run.
    """
    summary = DeadlineScheduler().tick()
    logger.info(f"Exchange deadline scan complete: {summary}")
    return summary
