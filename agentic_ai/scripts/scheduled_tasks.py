"""
Scheduled Tasks for the Approval Gate

Periodically sweeps pending approvals whose ``expires_at`` has passed and
moves them to ``expired``. Each expiry appends an explanatory note to the
conversation that asked for it, so the requester never waits on a dead
approval.

Read paths already treat lapsed approvals as expired; the sweep makes the
stored status agree and triggers the follow-up note.

A second job settles approvals whose follow-up was cut short, e.g. by a
restart between the review and the resume.

Uses APScheduler for in-process scheduling. Enable it (``enable_scheduler``)
on exactly one worker.
"""

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from agentic_ai.service import AgenticAIService
from agentic_ai.structured_logging import Subsystem, get_subsystem_logger

logger = get_subsystem_logger(Subsystem.SCHEDULER)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def run_approval_expiry(service: AgenticAIService) -> int:
    """Expire every lapsed pending approval. Returns how many were expired."""
    logger.info("Starting scheduled approval expiry sweep...")
    try:
        expired = await service.expire_stale_approvals()
    except Exception as e:
        logger.error(f"Approval expiry sweep failed: {e}")
        return 0

    logger.info(f"Approval expiry sweep complete: {len(expired)} approvals expired")
    return len(expired)


async def run_checkpoint_recovery(service: AgenticAIService) -> int:
    """Settle approvals whose follow-up was interrupted. Returns how many were settled."""
    try:
        settled = await service.recover_checkpoints()
    except Exception as e:
        logger.error(f"Checkpoint recovery failed: {e}")
        return 0

    if settled:
        logger.info(f"Checkpoint recovery complete: {settled} checkpoints settled")
    return settled


def setup_scheduler(
    service: AgenticAIService,
    sweep_interval_minutes: Optional[int] = None,
) -> AsyncIOScheduler:
    """
    Set up the APScheduler with the approval expiry sweep.

    Args:
        service: Initialized service whose approvals are swept
        sweep_interval_minutes: How often to sweep (default: service.settings.approval_sweep_interval_minutes)

    Returns:
        Configured scheduler instance
    """
    global scheduler

    interval = sweep_interval_minutes or service.settings.approval_sweep_interval_minutes
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_approval_expiry,
        trigger=IntervalTrigger(minutes=interval),
        args=[service],
        id="approval_expiry",
        name="Approval Expiry Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        run_checkpoint_recovery,
        trigger=IntervalTrigger(minutes=interval),
        args=[service],
        id="checkpoint_recovery",
        name="Checkpoint Recovery",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info(f"Scheduler configured: approval expiry and checkpoint recovery every {interval}min")
    return scheduler


def start_scheduler(service: AgenticAIService) -> Optional[AsyncIOScheduler]:
    """Start the scheduler if enabled and not already running."""
    global scheduler

    if not service.settings.enable_scheduler:
        logger.info("Scheduler disabled (enable_scheduler=False)")
        return None

    if scheduler is None:
        scheduler = setup_scheduler(service)

    if not scheduler.running:
        scheduler.start()
        logger.info("Approval expiry scheduler started")
    return scheduler


def stop_scheduler():
    """Stop the scheduler if running."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("Approval expiry scheduler stopped")
    scheduler = None


# Run one sweep against the configured database
if __name__ == "__main__":
    from agentic_ai.adapters.fastapi_adapter import FastAPIAdapterServices, create_adapter_from_env
    from agentic_ai.service import create_agentic_ai_service

    class _NoAuth:
        async def get_user_by_id(self, user_id):
            return None

        async def check_permission(self, user_id, action):
            return False

    class _NoContext:
        async def search_context(self, query, options):
            return []

    async def main():
        logging.basicConfig(level=logging.INFO)
        deps = create_adapter_from_env(FastAPIAdapterServices(
            agent_service=_NoAuth(),
            context_service=_NoContext(),
        ))
        service = await create_agentic_ai_service(deps, create_tables=False)
        count = await run_approval_expiry(service)
        print(f"Expired {count} approvals")

    asyncio.run(main())
