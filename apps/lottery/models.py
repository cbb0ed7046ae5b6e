from django.db import models
from django.db.models import Q
from django.conf import settings
from django.utils import timezone


class Draw(models.Model):
    """
    One weekly draw cycle. At most one draw is OPEN at a time.
    """
    STATUS_OPEN = 'OPEN'
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_CHOICES = [
        (STATUS_OPEN, 'Open'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    draw_date = models.DateTimeField(
        db_index=True,
        help_text="Close time of the draw"
    )
    prize_amount = models.PositiveIntegerField(
        default=50,
        help_text="Prize amount paid to the winner"
    )
    total_tickets = models.PositiveIntegerField(
        default=0,
        help_text="Sum of all participation rows"
    )
    status = models.CharField(
        max_length=10,
        choices=STATUS_CHOICES,
        default=STATUS_OPEN,
        db_index=True,
    )
    winner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='won_draws',
    )
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'lottery_draws'
        verbose_name = 'Draw'
        verbose_name_plural = 'Draws'
        ordering = ['-draw_date']
        constraints = [
            models.UniqueConstraint(
                fields=['status'],
                condition=Q(status='OPEN'),
                name='lottery_single_open_draw',
            ),
        ]

    def __str__(self):
        return f"Draw {self.id} ({self.status}) - {self.draw_date:%Y-%m-%d %H:%M}"

    @property
    def is_open(self):
        return self.status == self.STATUS_OPEN


class Ticket(models.Model):
    """
    One unit of lottery entry, tied to an earning source
    """
    SOURCE_SURVEY = 'SURVEY'
    SOURCE_SOCIAL = 'SOCIAL'
    SOURCE_REFERRAL = 'REFERRAL'
    SOURCE_CHOICES = [
        (SOURCE_SURVEY, 'Survey'),
        (SOURCE_SOCIAL, 'Social'),
        (SOURCE_REFERRAL, 'Referral'),
    ]

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='tickets',
        help_text="Owner of the ticket"
    )
    source = models.CharField(
        max_length=10,
        choices=SOURCE_CHOICES,
    )
    confirmation_code = models.CharField(
        max_length=255,
        unique=True,
        help_text="Idempotency token of this unit of credit"
    )
    is_used = models.BooleanField(
        default=False,
        help_text="Whether the ticket has been applied to a draw"
    )
    draw = models.ForeignKey(
        Draw,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='tickets',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'lottery_tickets'
        verbose_name = 'Ticket'
        verbose_name_plural = 'Tickets'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'source'], name='lottery_tic_user_source_idx'),
            models.Index(fields=['user', 'is_used'], name='lottery_tic_user_used_idx'),
            models.Index(fields=['draw', 'is_used'], name='lottery_tic_draw_used_idx'),
        ]

    def __str__(self):
        return f"Ticket {self.confirmation_code} - {self.user_id}"


class DrawParticipation(models.Model):
    """
    Tickets a user has applied to a draw
    """
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='participations',
    )
    draw = models.ForeignKey(
        Draw,
        on_delete=models.CASCADE,
        related_name='participations',
    )
    tickets_used = models.PositiveIntegerField(default=0)
    is_winner = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'lottery_draw_participations'
        verbose_name = 'Draw participation'
        verbose_name_plural = 'Draw participations'
        constraints = [
            models.UniqueConstraint(fields=['user', 'draw'], name='lottery_unique_user_draw'),
        ]

    def __str__(self):
        return f"{self.user_id} in draw {self.draw_id}: {self.tickets_used}"


class ProcessedEvent(models.Model):
    """
    External event identifiers that have already been credited.
    Written once, never updated.
    """
    event_id = models.CharField(max_length=255, unique=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='processed_events',
    )
    outcome = models.CharField(max_length=20, default='CREDITED')
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'lottery_processed_events'
        verbose_name = 'Processed event'
        verbose_name_plural = 'Processed events'
        ordering = ['-created_at']

    def __str__(self):
        return self.event_id


class PostbackAudit(models.Model):
    """
    Audit trail of every inbound completion notification
    """
    OUTCOME_CREDITED = 'CREDITED'
    OUTCOME_DUPLICATE = 'DUPLICATE'
    OUTCOME_NOT_COMPLETED = 'NOT_COMPLETED'
    OUTCOME_AUTH_FAILED = 'AUTH_FAILED'
    OUTCOME_INVALID = 'INVALID'
    OUTCOME_UNKNOWN_USER = 'UNKNOWN_USER'
    OUTCOME_ERROR = 'ERROR'
    OUTCOME_CHOICES = [
        (OUTCOME_CREDITED, 'Credited'),
        (OUTCOME_DUPLICATE, 'Duplicate'),
        (OUTCOME_NOT_COMPLETED, 'Not completed'),
        (OUTCOME_AUTH_FAILED, 'Authentication failed'),
        (OUTCOME_INVALID, 'Invalid'),
        (OUTCOME_UNKNOWN_USER, 'Unknown user'),
        (OUTCOME_ERROR, 'Error'),
    ]

    transaction_id = models.CharField(max_length=255, blank=True, db_index=True)
    raw_user_id = models.CharField(max_length=64, blank=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='postback_audits',
    )
    completion_status = models.CharField(max_length=16, blank=True)
    outcome = models.CharField(max_length=20, choices=OUTCOME_CHOICES, db_index=True)
    detail = models.TextField(blank=True)
    test_mode = models.BooleanField(default=False)
    remote_addr = models.GenericIPAddressField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'lottery_postback_audits'
        verbose_name = 'Postback audit'
        verbose_name_plural = 'Postback audits'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'transaction_id'], name='lottery_pba_user_trans_idx'),
        ]

    def __str__(self):
        return f"{self.transaction_id} [{self.outcome}]"


class Setting(models.Model):
    """
    Opaque key/value record
    """
    key = models.CharField(max_length=255, unique=True)
    value = models.TextField(blank=True)
    description = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'lottery_settings'
        verbose_name = 'Setting'
        verbose_name_plural = 'Settings'
        ordering = ['key']

    def __str__(self):
        return self.key


class SideEffectTask(models.Model):
    """
    Best-effort work (emails, referral credit, instant notifications) run
    outside the ledger transaction with its own retry cap.
    """
    KIND_SEND_EMAIL = 'SEND_EMAIL'
    KIND_PROPAGATE_REFERRAL = 'PROPAGATE_REFERRAL'
    KIND_NOTIFY_INSTANT = 'NOTIFY_INSTANT'
    KIND_CHOICES = [
        (KIND_SEND_EMAIL, 'Send email'),
        (KIND_PROPAGATE_REFERRAL, 'Propagate referral'),
        (KIND_NOTIFY_INSTANT, 'Instant notification'),
    ]

    STATUS_PENDING = 'PENDING'
    STATUS_RUNNING = 'RUNNING'
    STATUS_DONE = 'DONE'
    STATUS_FAILED = 'FAILED'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_RUNNING, 'Running'),
        (STATUS_DONE, 'Done'),
        (STATUS_FAILED, 'Failed'),
    ]

    kind = models.CharField(max_length=32, choices=KIND_CHOICES)
    payload = models.JSONField(default=dict, blank=True)
    status = models.CharField(
        max_length=10,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
    )
    attempts = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=3)
    next_attempt_at = models.DateTimeField(default=timezone.now)
    last_error = models.TextField(blank=True)
    dedupe_key = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
        help_text="Enqueueing the same key twice keeps the first task"
    )
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'lottery_side_effect_tasks'
        verbose_name = 'Side-effect task'
        verbose_name_plural = 'Side-effect tasks'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'next_attempt_at'], name='lottery_task_status_next_idx'),
        ]

    def __str__(self):
        return f"{self.kind} #{self.id} ({self.status})"
