"""
Inbound survey completion notifications (postbacks).

Every notification is audited. Only completed, authenticated,
first-seen events credit a ticket.
"""
from dataclasses import dataclass, field
import hashlib
import hmac
import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from rest_framework import status

from .exceptions import (
    AuthenticationError,
    DuplicateEventError,
    InvalidPostbackError,
    LotteryError,
    UnknownUserError,
)
from .models import PostbackAudit, SideEffectTask, Ticket
from .services import DrawService, IdempotencyGuard, LedgerService, ledger_transaction
from .tasks import enqueue

logger = logging.getLogger(__name__)

User = get_user_model()

COMPLETED_STATUS = '1'

PARAM_ALIASES = {
    'user_id': ('user_id',),
    'transaction_id': ('external_transaction_id', 'trans_id'),
    'completion_status': ('completion_status', 'status'),
    'auth_hash': ('auth_hash', 'hash'),
    'test_mode': ('test_mode',),
}


@dataclass
class PostbackResult:
    outcome: str
    status_code: int
    message: str
    data: dict = field(default_factory=dict)

    @property
    def credited(self):
        return self.outcome == PostbackAudit.OUTCOME_CREDITED


def generate_secure_hash(user_id):
    raw = f"{user_id}-{settings.POSTBACK_SECURE_HASH_KEY}"
    return hashlib.md5(raw.encode()).hexdigest()


def validate_secure_hash(user_id, auth_hash):
    if not auth_hash:
        return False
    return hmac.compare_digest(generate_secure_hash(user_id), str(auth_hash).lower())


def extract_params(params):
    extracted = {}
    for name, aliases in PARAM_ALIASES.items():
        value = None
        for alias in aliases:
            value = params.get(alias)
            if value not in (None, ''):
                break
        extracted[name] = str(value).strip() if value not in (None, '') else None
    return extracted


class PostbackService:

    @staticmethod
    def process(params, remote_addr=None):
        """
        Handle one completion notification and return its result.
        Unexpected errors are audited and re-raised.
        """
        values = extract_params(params)
        test_mode = values['test_mode'] in ('1', 'true', 'True')
        audit = PostbackAudit(
            transaction_id=values['transaction_id'] or '',
            raw_user_id=(values['user_id'] or '')[:64],
            completion_status=(values['completion_status'] or '')[:16],
            test_mode=test_mode,
            remote_addr=remote_addr,
        )

        try:
            result = PostbackService._handle(values, test_mode, audit)
        except DuplicateEventError as e:
            result = PostbackResult(PostbackAudit.OUTCOME_DUPLICATE, status.HTTP_200_OK, e.detail)
        except InvalidPostbackError as e:
            result = PostbackResult(PostbackAudit.OUTCOME_INVALID, e.status_code, e.detail)
        except AuthenticationError as e:
            result = PostbackResult(PostbackAudit.OUTCOME_AUTH_FAILED, e.status_code, e.detail)
        except UnknownUserError as e:
            result = PostbackResult(PostbackAudit.OUTCOME_UNKNOWN_USER, e.status_code, e.detail)
        except LotteryError as e:
            # Nothing was credited; the notifier should retry
            result = PostbackResult(PostbackAudit.OUTCOME_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR, e.detail)
        except Exception as e:
            audit.outcome = PostbackAudit.OUTCOME_ERROR
            audit.detail = str(e)[:1000]
            audit.save()
            logger.exception(f"Postback {audit.transaction_id} for user {audit.raw_user_id} failed")
            raise

        audit.outcome = result.outcome
        audit.detail = result.message
        audit.save()

        log = logger.warning if result.status_code >= 400 else logger.info
        log(f"Postback {audit.transaction_id} user={audit.raw_user_id}: {result.outcome} ({result.message})")
        return result

    @staticmethod
    def _handle(values, test_mode, audit):
        user_id = values['user_id']
        transaction_id = values['transaction_id']
        completion_status = values['completion_status']

        missing = [name for name in ('user_id', 'transaction_id', 'completion_status') if not values[name]]
        if missing:
            raise InvalidPostbackError(f"Missing parameters: {', '.join(missing)}")
        if not user_id.isdigit():
            raise InvalidPostbackError('user_id must be numeric')
        if len(transaction_id) > 255:
            raise InvalidPostbackError('Transaction id too long')

        if test_mode and settings.POSTBACK_TEST_MODE_ENABLED:
            logger.warning(f"Postback {transaction_id}: hash check bypassed by test mode")
        elif not validate_secure_hash(user_id, values['auth_hash']):
            raise AuthenticationError()

        if completion_status != COMPLETED_STATUS:
            return PostbackResult(
                PostbackAudit.OUTCOME_NOT_COMPLETED,
                status.HTTP_200_OK,
                f"Completion status {completion_status}; no ticket awarded",
            )

        try:
            user = User.objects.get(pk=int(user_id))
        except User.DoesNotExist:
            raise UnknownUserError(f"User {user_id} not found")
        audit.user = user

        if IdempotencyGuard.is_processed(transaction_id):
            raise DuplicateEventError(f"Event {transaction_id} already processed")

        draw = DrawService.get_or_create_open_draw()

        with ledger_transaction():
            user, draw = LedgerService.lock_rows(user.pk, draw.id)
            IdempotencyGuard.check_and_reserve(
                transaction_id,
                user=user,
                detail={'source': Ticket.SOURCE_SURVEY, 'draw_id': draw.pk, 'test_mode': test_mode},
            )

            is_first_survey = not Ticket.objects.filter(user=user, source=Ticket.SOURCE_SURVEY).exists()
            ticket_ids, applied = LedgerService.credit(
                user.pk,
                1,
                Ticket.SOURCE_SURVEY,
                reference=transaction_id,
                draw=draw,
            )

            if is_first_survey and user.referred_by_id:
                enqueue(
                    SideEffectTask.KIND_PROPAGATE_REFERRAL,
                    {'referred_user_id': user.pk},
                    dedupe_key=f"referral:{user.pk}",
                )
            enqueue(
                SideEffectTask.KIND_NOTIFY_INSTANT,
                {
                    'user_id': user.pk,
                    'event_id': transaction_id,
                    'message': f"Survey completed! You now have {applied} ticket(s) in the current draw.",
                },
                dedupe_key=f"instant:{transaction_id}",
            )
            enqueue(
                SideEffectTask.KIND_SEND_EMAIL,
                {
                    'to': user.email,
                    'template': 'ticket_credited',
                    'context': {
                        'name': user.name or user.email,
                        'available_tickets': applied,
                        'draw_date': draw.draw_date.astimezone(DrawService.draw_timezone()).strftime('%Y-%m-%d %H:%M'),
                    },
                },
                dedupe_key=f"credit_email:{transaction_id}",
            )

        return PostbackResult(
            PostbackAudit.OUTCOME_CREDITED,
            status.HTTP_200_OK,
            'Ticket awarded',
            data={
                'ticket_id': ticket_ids[0],
                'available_tickets': applied,
                'draw_id': draw.pk,
                'first_survey': is_first_survey,
            },
        )
