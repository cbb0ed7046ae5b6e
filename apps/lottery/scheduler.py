"""
Scheduler for the weekly draw close and the side-effect task queue
"""
from zoneinfo import ZoneInfo
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from django.conf import settings
from django.db import close_old_connections
from django_apscheduler.jobstores import DjangoJobStore
from django_apscheduler.models import DjangoJobExecution

logger = logging.getLogger(__name__)

JOB_EXECUTION_MAX_AGE = 604_800  # 7 days


def close_due_draws_job():
    """
    Close every draw whose close time has passed
    """
    from apps.lottery.services import DrawService

    close_old_connections()
    try:
        closed = DrawService.close_due_draws()
        for draw in closed:
            logger.info(f"Scheduled close of draw {draw.id}: {draw.status}, winner {draw.winner_id}")
        if not closed:
            logger.info("No draw due for closing")
    except Exception as e:
        logger.error(f"Error closing due draws: {str(e)}")


def process_side_effect_tasks_job():
    """
    Drain due emails, referral credits and instant notifications
    """
    from apps.lottery.tasks import process_pending_tasks

    close_old_connections()
    try:
        results = process_pending_tasks()
        if any(results.values()):
            logger.info(f"Processed side-effect tasks: {results}")
    except Exception as e:
        logger.error(f"Error processing side-effect tasks: {str(e)}")


def delete_old_job_executions(max_age=JOB_EXECUTION_MAX_AGE):
    DjangoJobExecution.objects.delete_old_job_executions(max_age)


def start_scheduler():
    """
    Start the scheduler with the draw sweep and the task queue drain
    """
    draw_tz = ZoneInfo(settings.DRAW_TIMEZONE)

    scheduler = BackgroundScheduler(timezone=draw_tz)
    scheduler.add_jobstore(DjangoJobStore(), "default")

    scheduler.add_job(
        close_due_draws_job,
        trigger=CronTrigger(
            day_of_week=settings.DRAW_WEEKDAY,
            hour=settings.DRAW_HOUR,
            minute=settings.DRAW_MINUTE,
            timezone=draw_tz,
        ),
        id='close_due_draws_job',
        name='Close due draws weekly',
        max_instances=1,
        coalesce=True,
        misfire_grace_time=3600,
        replace_existing=True,
    )

    scheduler.add_job(
        process_side_effect_tasks_job,
        trigger=IntervalTrigger(seconds=settings.SIDE_EFFECT_TASK_POLL_SECONDS),
        id='process_side_effect_tasks_job',
        name='Process side-effect tasks',
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        delete_old_job_executions,
        trigger=CronTrigger(day_of_week='mon', hour=0, minute=0, timezone=draw_tz),
        id='delete_old_job_executions',
        name='Delete old job executions',
        max_instances=1,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        f"Draw scheduler started. Draws close weekly on day {settings.DRAW_WEEKDAY} "
        f"at {settings.DRAW_HOUR:02d}:{settings.DRAW_MINUTE:02d} {settings.DRAW_TIMEZONE}."
    )
    return scheduler
