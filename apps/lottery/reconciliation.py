"""
Detects and repairs drift between ticket records and draw participation.

Used by the ticket verification endpoint and the reconcile_tickets
management command.
"""
import logging

from django.contrib.auth import get_user_model
from django.db.models import Count
from django.utils import timezone

from .exceptions import DuplicateEventError, UnknownUserError
from .models import Draw, DrawParticipation, PostbackAudit, Ticket
from .services import DrawService, IdempotencyGuard, LedgerService, SettingsStore, ledger_transaction

logger = logging.getLogger(__name__)
emergency_logger = logging.getLogger('apps.lottery.emergency')

User = get_user_model()

# Audit outcomes that prove an authenticated, completed survey
LEGITIMATE_COMPLETION_OUTCOMES = (
    PostbackAudit.OUTCOME_CREDITED,
    PostbackAudit.OUTCOME_DUPLICATE,
    PostbackAudit.OUTCOME_ERROR,
)


class ReconciliationService:

    @staticmethod
    def _get_user(user_id):
        try:
            return User.objects.get(pk=user_id)
        except User.DoesNotExist:
            raise UnknownUserError(f"User {user_id} not found")

    @staticmethod
    def audit(user_id):
        """
        Compare applied ticket records with participation rows, per draw.
        Returns a dict with `has_discrepancy` and the detail behind it.
        """
        user = ReconciliationService._get_user(user_id)

        applied_by_draw = {
            row['draw_id']: row['count']
            for row in Ticket.objects.filter(user=user, is_used=True, draw__isnull=False)
            .values('draw_id')
            .annotate(count=Count('id'))
        }
        participations = {p.draw_id: p for p in DrawParticipation.objects.filter(user=user)}

        mismatched = [
            {
                'draw_id': draw_id,
                'participation_id': participation.pk,
                'recorded': participation.tickets_used,
                'actual': applied_by_draw[draw_id],
            }
            for draw_id, participation in participations.items()
            if draw_id in applied_by_draw and participation.tickets_used != applied_by_draw[draw_id]
        ]
        orphaned = [
            {
                'draw_id': draw_id,
                'participation_id': participation.pk,
                'recorded': participation.tickets_used,
            }
            for draw_id, participation in participations.items()
            if draw_id not in applied_by_draw
        ]
        missing = [
            {'draw_id': draw_id, 'actual': count}
            for draw_id, count in applied_by_draw.items()
            if draw_id not in participations
        ]

        return {
            'user_id': user.pk,
            'has_discrepancy': bool(mismatched or orphaned or missing),
            'ticket_count': Ticket.objects.filter(user=user).count(),
            'applied_ticket_count': sum(applied_by_draw.values()),
            'participation_total': sum(p.tickets_used for p in participations.values()),
            'available_tickets': user.available_tickets,
            'total_tickets_earned': user.total_tickets_earned,
            'mismatched': mismatched,
            'orphaned': orphaned,
            'missing': missing,
        }

    @staticmethod
    def repair(user_id):
        """
        Fix every discrepancy found by audit(). Each action is idempotent,
        so a second run on a consistent user writes nothing.
        """
        actions = []
        writes = 0
        touched_draw_ids = set()

        with ledger_transaction():
            LedgerService.lock_rows(user_id)
            report = ReconciliationService.audit(user_id)

            for item in report['mismatched']:
                DrawParticipation.objects.filter(pk=item['participation_id']).update(
                    tickets_used=item['actual'],
                    updated_at=timezone.now(),
                )
                actions.append(
                    f"Draw {item['draw_id']}: participation {item['recorded']} -> {item['actual']}"
                )
                touched_draw_ids.add(item['draw_id'])
                writes += 1

            for item in report['orphaned']:
                DrawParticipation.objects.filter(pk=item['participation_id']).delete()
                actions.append(f"Draw {item['draw_id']}: removed participation with no tickets")
                touched_draw_ids.add(item['draw_id'])
                writes += 1

            for item in report['missing']:
                DrawParticipation.objects.create(
                    user_id=user_id,
                    draw_id=item['draw_id'],
                    tickets_used=item['actual'],
                )
                actions.append(f"Draw {item['draw_id']}: created participation with {item['actual']} ticket(s)")
                touched_draw_ids.add(item['draw_id'])
                writes += 1

            for draw in Draw.objects.filter(pk__in=touched_draw_ids):
                if DrawService.recompute_total(draw):
                    writes += 1

        if writes:
            logger.info(f"Repaired tickets for user {user_id}: {'; '.join(actions)}")

        return {
            'user_id': user_id,
            'had_discrepancy': report['has_discrepancy'],
            'actions': actions,
            'writes': writes,
            'audit': ReconciliationService.audit(user_id),
        }

    @staticmethod
    def issue_emergency_ticket(user_id, event_id):
        """
        Issue exactly one ticket to a user who holds none, provided an
        authenticated completion of `event_id` was recorded for them.
        The event id is reserved with the credit, so a later redelivery of
        the same event is a duplicate.
        Returns the ticket id, or None when the user does not qualify.
        """
        user = ReconciliationService._get_user(user_id)

        legitimate = PostbackAudit.objects.filter(
            user=user,
            transaction_id=event_id,
            completion_status='1',
            outcome__in=LEGITIMATE_COMPLETION_OUTCOMES,
        ).exists()
        if not legitimate:
            logger.info(f"No recorded completion of {event_id} for user {user_id}; emergency ticket refused")
            return None

        draw = DrawService.get_or_create_open_draw()

        with ledger_transaction():
            user, draw = LedgerService.lock_rows(user.pk, draw.id)

            if Ticket.objects.filter(user=user).exists():
                return None

            try:
                IdempotencyGuard.check_and_reserve(
                    event_id,
                    user=user,
                    detail={'source': Ticket.SOURCE_SURVEY, 'draw_id': draw.pk, 'emergency': True},
                )
            except DuplicateEventError:
                logger.info(f"Event {event_id} already processed; emergency ticket refused for user {user_id}")
                return None

            ticket_ids, applied = LedgerService.credit(
                user.pk,
                1,
                Ticket.SOURCE_SURVEY,
                reference=f"emergency_verify_{event_id}",
                draw=draw,
            )
            ticket_id = ticket_ids[0]

            SettingsStore.set_json(
                f"emergency_verify_{ticket_id}",
                {
                    'user_id': user.pk,
                    'event_id': event_id,
                    'issued_at': timezone.now().isoformat(),
                },
                description='Emergency ticket issued by reconciliation',
            )

        emergency_logger.warning(
            f"EMERGENCY TICKET {ticket_id} issued to user {user.pk} for event {event_id} "
            f"(available now {applied})"
        )
        return ticket_id
