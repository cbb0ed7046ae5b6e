"""
Outbox of best-effort side effects.

Tasks are written inside the ledger transaction that caused them and run
afterwards by the scheduler or the process_tasks command, each kind with
its own retry cap and exponential backoff.
"""
from datetime import timedelta
import logging

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .models import SideEffectTask

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


def enqueue(kind, payload, dedupe_key=None):
    """
    Queue a side effect. With a dedupe_key, a second enqueue returns the
    task already queued under that key.
    """
    max_attempts = settings.SIDE_EFFECT_TASK_MAX_ATTEMPTS.get(kind, DEFAULT_MAX_ATTEMPTS)

    try:
        with transaction.atomic():
            return SideEffectTask.objects.create(
                kind=kind,
                payload=payload,
                dedupe_key=dedupe_key,
                max_attempts=max_attempts,
            )
    except IntegrityError:
        if dedupe_key is None:
            raise
        logger.info(f"Task {dedupe_key} already queued")
        return SideEffectTask.objects.get(dedupe_key=dedupe_key)


def send_email(payload):
    from .services import EmailService
    EmailService.send_templated(payload['to'], payload['template'], payload.get('context', {}))


def propagate_referral(payload):
    from .services import ReferralService
    ReferralService.propagate(payload['referred_user_id'])


def notify_instant(payload):
    from .services import SettingsStore
    SettingsStore.set_json(
        f"instant_notification_{payload['user_id']}_{payload['event_id']}",
        {
            'user_id': payload['user_id'],
            'message': payload.get('message', ''),
            'created_at': timezone.now().isoformat(),
            'read': False,
        },
        description='Instant ticket notification',
    )


HANDLERS = {
    SideEffectTask.KIND_SEND_EMAIL: send_email,
    SideEffectTask.KIND_PROPAGATE_REFERRAL: propagate_referral,
    SideEffectTask.KIND_NOTIFY_INSTANT: notify_instant,
}


def backoff_delay(attempts):
    return timedelta(seconds=settings.SIDE_EFFECT_TASK_BACKOFF_SECONDS * 2 ** max(attempts - 1, 0))


def run_task(task):
    """
    Claim and run a single pending task.
    Returns the resulting status, or None if another worker claimed it.
    """
    claimed = SideEffectTask.objects.filter(
        pk=task.pk,
        status=SideEffectTask.STATUS_PENDING,
    ).update(
        status=SideEffectTask.STATUS_RUNNING,
        attempts=F('attempts') + 1,
        updated_at=timezone.now(),
    )
    if not claimed:
        return None

    task.refresh_from_db()

    try:
        HANDLERS[task.kind](task.payload)
    except Exception as e:
        logger.error(f"Task {task.kind} #{task.id} failed (attempt {task.attempts}/{task.max_attempts}): {str(e)}")
        task.last_error = str(e)
        if task.attempts >= task.max_attempts:
            task.status = SideEffectTask.STATUS_FAILED
        else:
            task.status = SideEffectTask.STATUS_PENDING
            task.next_attempt_at = timezone.now() + backoff_delay(task.attempts)
        task.save(update_fields=['status', 'last_error', 'next_attempt_at', 'updated_at'])
        return task.status

    task.status = SideEffectTask.STATUS_DONE
    task.completed_at = timezone.now()
    task.last_error = ''
    task.save(update_fields=['status', 'completed_at', 'last_error', 'updated_at'])
    return task.status


def requeue_stale_tasks():
    """
    Tasks left RUNNING by a crashed worker go back to the queue
    """
    cutoff = timezone.now() - timedelta(minutes=settings.SIDE_EFFECT_TASK_STALE_MINUTES)
    count = SideEffectTask.objects.filter(
        status=SideEffectTask.STATUS_RUNNING,
        updated_at__lt=cutoff,
    ).update(status=SideEffectTask.STATUS_PENDING, next_attempt_at=timezone.now())
    if count:
        logger.warning(f"Requeued {count} stale task(s)")
    return count


def process_pending_tasks(limit=50):
    """
    Run due tasks. Returns counts per resulting status.
    """
    requeue_stale_tasks()

    results = {
        SideEffectTask.STATUS_DONE: 0,
        SideEffectTask.STATUS_PENDING: 0,
        SideEffectTask.STATUS_FAILED: 0,
    }
    due = SideEffectTask.objects.filter(
        status=SideEffectTask.STATUS_PENDING,
        next_attempt_at__lte=timezone.now(),
    ).order_by('next_attempt_at', 'id')[:limit]

    for task in list(due):
        status = run_task(task)
        if status is not None:
            results[status] += 1

    return results
