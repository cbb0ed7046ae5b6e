from contextlib import contextmanager
from datetime import timedelta
from zoneinfo import ZoneInfo
import json
import logging
import secrets

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import IntegrityError, OperationalError, connection, transaction
from django.db.models import F, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone
import requests

from .exceptions import (
    BonusClaimError,
    DrawNotOpenError,
    DuplicateEventError,
    EmailDeliveryError,
    InsufficientBalanceError,
    InvalidAwardError,
    InvalidWinnerError,
    LotteryError,
    ReferralPropagationError,
    TransactionTimeoutError,
    UnknownUserError,
)
from .models import Draw, DrawParticipation, ProcessedEvent, Setting, SideEffectTask, Ticket
from .tasks import enqueue

logger = logging.getLogger(__name__)

User = get_user_model()

# PostgreSQL: lock_not_available, query_canceled, deadlock_detected
TIMEOUT_PGCODES = ('55P03', '57014', '40P01')

# Standard completion = 1, non-winner re-engagement bonus = 2
SANCTIONED_SURVEY_COUNTS = (1, 2)

NON_WINNER_TOKEN_PREFIX = 'nw_'
NON_WINNER_BONUS_TICKETS = 2


def _is_timeout(exc):
    cause = exc.__cause__
    code = getattr(cause, 'pgcode', None) or getattr(cause, 'sqlstate', None)
    if code in TIMEOUT_PGCODES:
        return True
    return 'database is locked' in str(exc)


@contextmanager
def ledger_transaction():
    """
    Atomic block for ledger mutations with a bounded lock wait.
    Lock and statement timeouts surface as TransactionTimeoutError.
    """
    try:
        with transaction.atomic():
            if connection.vendor == 'postgresql':
                timeout_ms = int(settings.LEDGER_LOCK_TIMEOUT_MS)
                with connection.cursor() as cursor:
                    cursor.execute(f"SET LOCAL lock_timeout = '{timeout_ms}ms'")
                    cursor.execute(f"SET LOCAL statement_timeout = '{timeout_ms * 2}ms'")
            yield
    except OperationalError as e:
        if _is_timeout(e):
            logger.warning(f"Ledger transaction timed out: {str(e)}")
            raise TransactionTimeoutError() from e
        raise


class SettingsStore:
    """
    Opaque key/value settings backed by the Setting model
    """

    @staticmethod
    def get(key, default=None):
        value = Setting.objects.filter(key=key).values_list('value', flat=True).first()
        return default if value is None else value

    @staticmethod
    def get_json(key, default=None):
        value = SettingsStore.get(key)
        if value is None:
            return default
        try:
            return json.loads(value)
        except ValueError:
            logger.warning(f"Setting {key} does not hold valid JSON")
            return default

    @staticmethod
    def set(key, value, description=''):
        setting, _ = Setting.objects.update_or_create(
            key=key,
            defaults={'value': str(value), 'description': description}
        )
        return setting

    @staticmethod
    def set_json(key, data, description=''):
        return SettingsStore.set(key, json.dumps(data), description)


class EmailService:
    """
    Service for sending transactional email through the HTTP email API
    """
    TEMPLATES = {
        'ticket_credited': (
            'You earned a lottery ticket',
            '<p>Hi {name},</p><p>Thanks for completing a survey. You now have '
            '<strong>{available_tickets}</strong> ticket(s) in the draw closing {draw_date}.</p>'
        ),
        'draw_winner': (
            'You won the weekly draw!',
            '<p>Congratulations {name}!</p><p>You won the draw of {draw_date} '
            'with a prize of {prize_amount}. We will be in touch about your payout.</p>'
        ),
        'draw_non_winner': (
            'This week\'s draw results',
            '<p>Hi {name},</p><p>You did not win the draw of {draw_date} this time. '
            'Claim {bonus_tickets} bonus tickets for the next draw: '
            '<a href="{bonus_url}">{bonus_url}</a></p>'
        ),
    }

    @staticmethod
    def render(template, context):
        try:
            subject, body = EmailService.TEMPLATES[template]
        except KeyError:
            raise EmailDeliveryError(f"Unknown email template: {template}")
        return subject.format(**context), body.format(**context)

    @staticmethod
    def send_templated(to_email, template, context):
        """
        Send a templated email via the provider API.
        Raises EmailDeliveryError on any failure.
        """
        api_key = settings.EMAIL_API_KEY

        if not api_key:
            raise EmailDeliveryError("EMAIL_API_KEY is not configured")

        subject, html = EmailService.render(template, context)

        data = {
            'from': settings.EMAIL_FROM,
            'to': [to_email],
            'subject': subject,
            'html': html,
        }
        headers = {'Authorization': f'Bearer {api_key}'}

        try:
            response = requests.post(settings.EMAIL_API_URL, json=data, headers=headers, timeout=10)
        except requests.exceptions.RequestException as e:
            raise EmailDeliveryError(f"Failed to send email: {str(e)}") from e

        if response.status_code >= 400:
            raise EmailDeliveryError(
                f"Email API returned status {response.status_code}: {response.text[:200]}"
            )

        return True


class IdempotencyGuard:
    """
    Insert-if-absent record of processed external events
    """

    @staticmethod
    def check_and_reserve(event_id, user=None, detail=None):
        """
        Reserve the event id. Raises DuplicateEventError if it was seen before.
        Must run inside the transaction that performs the credit so a failed
        credit leaves no reservation behind.
        """
        try:
            with transaction.atomic():
                return ProcessedEvent.objects.create(
                    event_id=event_id,
                    user=user,
                    detail=detail or {},
                )
        except IntegrityError as e:
            raise DuplicateEventError(f"Event {event_id} already processed") from e

    @staticmethod
    def is_processed(event_id):
        return ProcessedEvent.objects.filter(event_id=event_id).exists()


class LedgerService:
    """
    Owns ticket balances and ticket records.
    Rows are always locked draw first, then user.
    """

    @staticmethod
    def lock_rows(user_id, draw_id=None):
        draw = None
        if draw_id is not None:
            draw = Draw.objects.select_for_update().get(pk=draw_id)
        try:
            user = User.objects.select_for_update().get(pk=user_id)
        except User.DoesNotExist:
            raise UnknownUserError(f"User {user_id} not found")
        return user, draw

    @staticmethod
    def validate_award(count, source):
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise InvalidAwardError(f"Ticket count must be a positive integer, got {count!r}")
        if source not in dict(Ticket.SOURCE_CHOICES):
            raise InvalidAwardError(f"Unknown ticket source {source!r}")
        if source == Ticket.SOURCE_SURVEY and count not in SANCTIONED_SURVEY_COUNTS:
            raise InvalidAwardError(f"Survey awards must be 1 or 2 tickets, got {count}")

    @staticmethod
    def award(user_id, count, source, reference=None):
        """
        Create `count` ticket records and increment both balances.
        Returns the ids of the created tickets.
        """
        try:
            LedgerService.validate_award(count, source)
        except InvalidAwardError as e:
            logger.error(f"Rejected award for user {user_id}: {e.detail}")
            raise

        reference = reference or secrets.token_hex(8)

        with ledger_transaction():
            user, _ = LedgerService.lock_rows(user_id)

            try:
                with transaction.atomic():
                    ticket_ids = [
                        Ticket.objects.create(
                            user=user,
                            source=source,
                            confirmation_code=f"{source}_{reference}_{i}",
                        ).id
                        for i in range(count)
                    ]
            except IntegrityError as e:
                raise DuplicateEventError(f"Tickets for {source}_{reference} already exist") from e

            User.objects.filter(pk=user.pk).update(
                available_tickets=F('available_tickets') + count,
                total_tickets_earned=F('total_tickets_earned') + count,
            )

        logger.info(f"Awarded {count} {source} ticket(s) to user {user_id} ({reference})")
        return ticket_ids

    @staticmethod
    def sync_applied_tickets(user, draw, target):
        """
        Mark exactly `target` of the user's tickets as applied to the draw:
        the newest unapplied ones are added, the oldest surplus ones released.
        """
        applied_here = Ticket.objects.filter(user=user, draw=draw, is_used=True).count()

        if target > applied_here:
            ticket_ids = list(
                Ticket.objects.filter(user=user, is_used=False)
                .order_by('-created_at', '-id')
                .values_list('id', flat=True)[:target - applied_here]
            )
            Ticket.objects.filter(id__in=ticket_ids).update(is_used=True, draw=draw)
        elif target < applied_here:
            ticket_ids = list(
                Ticket.objects.filter(user=user, draw=draw, is_used=True)
                .order_by('created_at', 'id')
                .values_list('id', flat=True)[:applied_here - target]
            )
            Ticket.objects.filter(id__in=ticket_ids).update(is_used=False, draw=None)

    @staticmethod
    def apply_all_to_open_draw(user_id, draw_id):
        """
        Set the user's participation in the draw to their available balance
        and recompute the draw total. A zero balance removes the user from
        the draw. Re-running with an unchanged balance writes nothing.
        """
        with ledger_transaction():
            user, draw = LedgerService.lock_rows(user_id, draw_id)

            if not draw.is_open:
                raise DrawNotOpenError(f"Draw {draw_id} is {draw.status}")

            available = user.available_tickets
            LedgerService.sync_applied_tickets(user, draw, available)

            participation = DrawParticipation.objects.filter(user=user, draw=draw).first()
            if available == 0:
                if participation is not None:
                    participation.delete()
            elif participation is None:
                DrawParticipation.objects.create(user=user, draw=draw, tickets_used=available)
            elif participation.tickets_used != available:
                participation.tickets_used = available
                participation.save(update_fields=['tickets_used', 'updated_at'])

            DrawService.recompute_total(draw)

        return available

    @staticmethod
    def credit(user_id, count, source, reference=None, draw=None):
        """
        award + apply_all_to_open_draw as one unit.
        Returns (ticket_ids, applied_count).
        """
        if draw is None:
            draw = DrawService.get_or_create_open_draw()

        with ledger_transaction():
            LedgerService.lock_rows(user_id, draw.id)
            ticket_ids = LedgerService.award(user_id, count, source, reference=reference)
            applied = LedgerService.apply_all_to_open_draw(user_id, draw.id)

        return ticket_ids, applied

    @staticmethod
    def apply_requested(user_id, requested=None):
        """
        Manual participation. Fails without touching the balance when the
        user asks for more tickets than they hold.
        """
        draw = DrawService.get_or_create_open_draw()

        with ledger_transaction():
            user, draw = LedgerService.lock_rows(user_id, draw.id)
            available = user.available_tickets

            if requested is None:
                requested = available
            if available == 0 or requested > available:
                raise InsufficientBalanceError(
                    f"Requested {requested} ticket(s) but only {available} available"
                )

            applied = LedgerService.apply_all_to_open_draw(user_id, draw.id)

        return draw, applied

    @staticmethod
    def reset_all():
        """
        Zero every nonzero available balance. Lifetime totals and ticket
        records are untouched.
        """
        with ledger_transaction():
            count = User.objects.filter(available_tickets__gt=0).update(available_tickets=0)
        logger.info(f"Reset available tickets for {count} user(s)")
        return count

    @staticmethod
    def reset_one(user_id):
        """
        Zero one user's balance and withdraw their entries from the open
        draw. Returns the previous balance.
        """
        open_draw = Draw.objects.filter(status=Draw.STATUS_OPEN).order_by('draw_date').first()

        with ledger_transaction():
            user, draw = LedgerService.lock_rows(user_id, open_draw.id if open_draw else None)
            previous = user.available_tickets
            if previous:
                User.objects.filter(pk=user.pk).update(available_tickets=0)
            if draw is not None and draw.is_open:
                LedgerService.apply_all_to_open_draw(user.pk, draw.id)

        logger.info(f"Reset {previous} available ticket(s) for user {user_id}")
        return previous


class ReferralService:
    """
    Credits the referrer when a referred user completes their first survey
    """

    @staticmethod
    def confirmation_reference(referred_user_id):
        return f"REF_{referred_user_id}"

    @staticmethod
    def confirmation_code(referred_user_id):
        return f"{Ticket.SOURCE_REFERRAL}_{ReferralService.confirmation_reference(referred_user_id)}_0"

    @staticmethod
    def is_eligible_referrer(referrer):
        return Ticket.objects.filter(user=referrer, source=Ticket.SOURCE_SURVEY).exists()

    @staticmethod
    def propagate(referred_user_id):
        """
        Award one REFERRAL ticket to the referrer of `referred_user_id`.
        Returns the created ticket id, or None when nothing was due.
        """
        try:
            referred = User.objects.select_related('referred_by').get(pk=referred_user_id)
        except User.DoesNotExist:
            logger.warning(f"Referral propagation skipped: user {referred_user_id} not found")
            return None

        referrer = referred.referred_by
        if referrer is None:
            return None

        if not ReferralService.is_eligible_referrer(referrer):
            logger.info(
                f"Referrer {referrer.id} has no survey tickets; no credit for referring {referred.id}"
            )
            return None

        if Ticket.objects.filter(confirmation_code=ReferralService.confirmation_code(referred.id)).exists():
            return None

        try:
            ticket_ids, _ = LedgerService.credit(
                referrer.id,
                1,
                Ticket.SOURCE_REFERRAL,
                reference=ReferralService.confirmation_reference(referred.id),
            )
        except DuplicateEventError:
            return None
        except LotteryError as e:
            raise ReferralPropagationError(
                f"Could not credit referrer {referrer.id} for user {referred.id}: {e.detail}"
            ) from e

        logger.info(f"Referral ticket awarded to {referrer.id} for referring {referred.id}")
        return ticket_ids[0]


class DrawService:
    """
    Draw lifecycle: lazy creation, weighted selection and closing
    """

    @staticmethod
    def draw_timezone():
        return ZoneInfo(settings.DRAW_TIMEZONE)

    @staticmethod
    def next_draw_datetime(now=None):
        """
        Next weekly close time strictly after `now`
        """
        tz = DrawService.draw_timezone()
        local_now = (now or timezone.now()).astimezone(tz)
        days_ahead = (settings.DRAW_WEEKDAY - local_now.weekday()) % 7
        candidate = local_now.replace(
            hour=settings.DRAW_HOUR,
            minute=settings.DRAW_MINUTE,
            second=0,
            microsecond=0,
        ) + timedelta(days=days_ahead)
        if candidate <= local_now:
            candidate += timedelta(days=7)
        return candidate

    @staticmethod
    def default_prize_amount():
        value = SettingsStore.get('default_prize_amount')
        try:
            return int(value) if value is not None else settings.DRAW_DEFAULT_PRIZE_AMOUNT
        except ValueError:
            logger.warning(f"Invalid default_prize_amount setting {value!r}, using default")
            return settings.DRAW_DEFAULT_PRIZE_AMOUNT

    @staticmethod
    def get_open_draw():
        return Draw.objects.filter(
            status=Draw.STATUS_OPEN,
            draw_date__gte=timezone.now(),
        ).order_by('draw_date').first()

    @staticmethod
    def get_or_create_open_draw():
        """
        Earliest OPEN draw whose close time has not passed, creating one
        for the next weekly slot when none exists. An overdue OPEN draw is
        closed first since only one draw may be open.
        """
        draw = DrawService.get_open_draw()
        if draw:
            return draw

        for overdue in Draw.objects.filter(status=Draw.STATUS_OPEN, draw_date__lt=timezone.now()):
            try:
                DrawService.close_draw(overdue.id)
            except DrawNotOpenError:
                pass

        try:
            with transaction.atomic():
                draw = Draw.objects.create(
                    draw_date=DrawService.next_draw_datetime(),
                    prize_amount=DrawService.default_prize_amount(),
                )
        except IntegrityError:
            # Another request created it first
            draw = Draw.objects.filter(status=Draw.STATUS_OPEN).order_by('draw_date').first()
            if draw is None:
                raise
            return draw

        logger.info(f"Created draw {draw.id} closing at {draw.draw_date.isoformat()}")
        return draw

    @staticmethod
    def recompute_total(draw):
        total = DrawParticipation.objects.filter(draw=draw).aggregate(
            total=Coalesce(Sum('tickets_used'), 0)
        )['total']
        if draw.total_tickets != total:
            draw.total_tickets = total
            draw.save(update_fields=['total_tickets', 'updated_at'])
            return True
        return False

    @staticmethod
    def build_pool(draw):
        """
        One entry per ticket used, ordered by user id. Falls back to the
        applied ticket records when the participation rows add up to zero.
        """
        pool = []
        participations = DrawParticipation.objects.filter(
            draw=draw,
            tickets_used__gt=0,
        ).order_by('user_id')
        for participation in participations:
            pool.extend([participation.user_id] * participation.tickets_used)

        if pool:
            return pool

        user_ids = Ticket.objects.filter(draw=draw, is_used=True).order_by('user_id', 'id').values_list('user_id', flat=True)
        if user_ids:
            logger.warning(f"Draw {draw.id} has no participation totals; rebuilding pool from ticket records")
        return list(user_ids)

    @staticmethod
    def select_weighted_winner(pool, rng=None):
        """
        Uniform pick over the flattened pool
        """
        if not pool:
            raise ValueError("Cannot select a winner from an empty pool")
        rng = rng or secrets.SystemRandom()
        return pool[rng.randrange(len(pool))]

    @staticmethod
    def close_draw(draw_id, winner_user_id=None, rng=None):
        """
        Close an OPEN draw. Selection, winner flags, draw status, user
        history and the balance reset commit together.
        """
        with ledger_transaction():
            draw = Draw.objects.select_for_update().get(pk=draw_id)
            if not draw.is_open:
                raise DrawNotOpenError(f"Draw {draw_id} is already {draw.status}")

            now = timezone.now()
            pool = DrawService.build_pool(draw)

            if winner_user_id is not None:
                if not DrawParticipation.objects.filter(
                    draw=draw, user_id=winner_user_id, tickets_used__gt=0
                ).exists():
                    raise InvalidWinnerError(
                        f"User {winner_user_id} has no tickets in draw {draw_id}"
                    )
            elif not pool:
                draw.status = Draw.STATUS_CANCELLED
                draw.completed_at = now
                draw.save(update_fields=['status', 'completed_at', 'updated_at'])
                logger.info(f"Draw {draw.id} cancelled: no participants")
                return draw
            else:
                winner_user_id = DrawService.select_weighted_winner(pool, rng)

            participation, _ = DrawParticipation.objects.get_or_create(
                user_id=winner_user_id,
                draw=draw,
                defaults={'tickets_used': pool.count(winner_user_id)},
            )
            participation.is_winner = True
            participation.save(update_fields=['is_winner', 'updated_at'])

            DrawService.recompute_total(draw)
            draw.status = Draw.STATUS_COMPLETED
            draw.winner_id = winner_user_id
            draw.completed_at = now
            draw.save(update_fields=['status', 'winner', 'completed_at', 'updated_at'])

            User.objects.filter(pk=winner_user_id).update(has_won=True, last_win_date=now)

            LedgerService.reset_all()

            DrawService.enqueue_result_emails(draw, set(pool) | {winner_user_id})

        logger.info(f"Draw {draw.id} completed. Winner: {winner_user_id}, tickets: {draw.total_tickets}")
        return draw

    @staticmethod
    def enqueue_result_emails(draw, participant_ids):
        draw_date = draw.draw_date.astimezone(DrawService.draw_timezone()).strftime('%Y-%m-%d %H:%M')

        for user in User.objects.filter(pk__in=participant_ids):
            context = {'name': user.name or user.email, 'draw_date': draw_date}

            if user.pk == draw.winner_id:
                context['prize_amount'] = draw.prize_amount
                template = 'draw_winner'
            else:
                token = NON_WINNER_TOKEN_PREFIX + secrets.token_urlsafe(16)
                SettingsStore.set_json(
                    f"non_winner_email_{token}",
                    {'user_id': user.pk, 'draw_id': draw.pk, 'claimed': False},
                    description=f"Non-winner bonus for draw {draw.pk}",
                )
                context['bonus_tickets'] = NON_WINNER_BONUS_TICKETS
                context['bonus_url'] = f"{settings.FRONTEND_URL}/bonus?token={token}"
                template = 'draw_non_winner'

            enqueue(
                SideEffectTask.KIND_SEND_EMAIL,
                {'to': user.email, 'template': template, 'context': context},
                dedupe_key=f"draw_email:{draw.pk}:{user.pk}",
            )

    @staticmethod
    def close_due_draws():
        """
        Close every OPEN draw whose close time has passed.
        No-op when nothing is due.
        """
        closed = []
        due = Draw.objects.filter(status=Draw.STATUS_OPEN, draw_date__lte=timezone.now()).order_by('draw_date')
        for draw in due:
            try:
                closed.append(DrawService.close_draw(draw.id))
            except DrawNotOpenError:
                logger.info(f"Draw {draw.id} was closed concurrently")
        return closed


class BonusService:
    """
    Non-survey ways of earning tickets
    """

    @staticmethod
    def claim_non_winner_bonus(user, token):
        """
        Redeem a single-use non-winner token for bonus survey tickets
        """
        if not token or not token.startswith(NON_WINNER_TOKEN_PREFIX):
            raise BonusClaimError('Invalid bonus token')

        key = f"non_winner_email_{token}"
        draw = DrawService.get_or_create_open_draw()

        with ledger_transaction():
            setting = Setting.objects.select_for_update().filter(key=key).first()
            if setting is None:
                raise BonusClaimError('Bonus token not found', status_code=404)

            data = json.loads(setting.value)
            if data.get('user_id') != user.pk:
                raise BonusClaimError('This bonus belongs to another user', status_code=403)
            if data.get('claimed'):
                raise BonusClaimError('Bonus already claimed')

            ticket_ids, applied = LedgerService.credit(
                user.pk,
                NON_WINNER_BONUS_TICKETS,
                Ticket.SOURCE_SURVEY,
                reference=token,
                draw=draw,
            )

            data.update({'claimed': True, 'claimed_at': timezone.now().isoformat()})
            setting.value = json.dumps(data)
            setting.save(update_fields=['value', 'updated_at'])

        return ticket_ids, applied

    @staticmethod
    def award_social_follow(user):
        """
        One SOCIAL ticket per user, available after the first survey
        """
        if not Ticket.objects.filter(user=user, source=Ticket.SOURCE_SURVEY).exists():
            raise BonusClaimError('Complete a survey before claiming the social follow ticket')

        draw = DrawService.get_or_create_open_draw()

        with ledger_transaction():
            locked, _ = LedgerService.lock_rows(user.pk, draw.id)
            if locked.social_media_followed:
                raise BonusClaimError('Social follow ticket already claimed')

            try:
                ticket_ids, applied = LedgerService.credit(
                    user.pk,
                    1,
                    Ticket.SOURCE_SOCIAL,
                    reference=f"follow_{user.pk}",
                    draw=draw,
                )
            except DuplicateEventError:
                raise BonusClaimError('Social follow ticket already claimed')

            User.objects.filter(pk=user.pk).update(social_media_followed=True)

        return ticket_ids, applied
