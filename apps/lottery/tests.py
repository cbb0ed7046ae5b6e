"""
Tests for lottery app views and services
"""
from datetime import datetime, timedelta
from io import StringIO
from pathlib import Path
from unittest.mock import patch, MagicMock
from zoneinfo import ZoneInfo
import importlib.util
import random

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import IntegrityError, transaction
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase
from rest_framework_simplejwt.tokens import RefreshToken
import requests

from .exceptions import (
    DrawNotOpenError,
    DuplicateEventError,
    InsufficientBalanceError,
    InvalidAwardError,
    InvalidWinnerError,
    TransactionTimeoutError,
)
from .models import (
    Draw,
    DrawParticipation,
    PostbackAudit,
    ProcessedEvent,
    Setting,
    SideEffectTask,
    Ticket,
)
from .postback import PostbackService, generate_secure_hash
from .reconciliation import ReconciliationService
from .scheduler import close_due_draws_job, start_scheduler
from .services import (
    BonusService,
    DrawService,
    IdempotencyGuard,
    LedgerService,
    ReferralService,
    SettingsStore,
)
from .tasks import enqueue, process_pending_tasks, run_task

User = get_user_model()

IST = ZoneInfo('Asia/Kolkata')


def email_ok():
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {'id': 'email-1'}
    return response


def postback_params(user_id, transaction_id='tx1', completion_status='1', **extra):
    params = {
        'user_id': str(user_id),
        'external_transaction_id': transaction_id,
        'completion_status': completion_status,
        'auth_hash': generate_secure_hash(user_id),
    }
    params.update(extra)
    return params


class AuthenticatedAPITestCase(APITestCase):
    """Base class with JWT helpers"""

    def get_auth_headers(self, user=None):
        """Get JWT token for authenticated requests"""
        refresh = RefreshToken.for_user(user or self.user)
        return {'HTTP_AUTHORIZATION': f'Bearer {refresh.access_token}'}


class LedgerServiceTestCase(TestCase):
    """Test cases for LedgerService"""

    def setUp(self):
        """Set up test data"""
        self.user = User.objects.create_user(email='alice@example.com')
        self.other = User.objects.create_user(email='bob@example.com')
        self.draw = DrawService.get_or_create_open_draw()

    def test_award_creates_tickets_and_increments_balances(self):
        """Test award creates one record per ticket and bumps both counters"""
        ticket_ids = LedgerService.award(self.user.id, 3, Ticket.SOURCE_REFERRAL, reference='abc')

        self.user.refresh_from_db()
        self.assertEqual(len(ticket_ids), 3)
        self.assertEqual(self.user.available_tickets, 3)
        self.assertEqual(self.user.total_tickets_earned, 3)
        self.assertEqual(
            set(Ticket.objects.filter(user=self.user).values_list('confirmation_code', flat=True)),
            {'REFERRAL_abc_0', 'REFERRAL_abc_1', 'REFERRAL_abc_2'}
        )

    def test_award_rejects_invalid_counts(self):
        """Test award rejects counts that are not positive integers"""
        for count in (0, -1, 1.5, True, '1'):
            with self.assertRaises(InvalidAwardError):
                LedgerService.award(self.user.id, count, Ticket.SOURCE_SOCIAL)

        self.user.refresh_from_db()
        self.assertEqual(self.user.available_tickets, 0)
        self.assertFalse(Ticket.objects.exists())

    def test_award_rejects_unsanctioned_survey_count(self):
        """Test survey awards are limited to 1 or 2 tickets"""
        with self.assertLogs('apps.lottery.services', level='ERROR'):
            with self.assertRaises(InvalidAwardError):
                LedgerService.award(self.user.id, 3, Ticket.SOURCE_SURVEY)

        LedgerService.award(self.user.id, 2, Ticket.SOURCE_SURVEY)
        self.user.refresh_from_db()
        self.assertEqual(self.user.available_tickets, 2)

    def test_award_rejects_unknown_source(self):
        """Test award rejects an unknown source"""
        with self.assertRaises(InvalidAwardError):
            LedgerService.award(self.user.id, 1, 'LOTTO')

    def test_award_duplicate_reference_raises(self):
        """Test reusing a reference cannot double-credit"""
        LedgerService.award(self.user.id, 1, Ticket.SOURCE_SURVEY, reference='tx1')

        with self.assertRaises(DuplicateEventError):
            LedgerService.award(self.user.id, 1, Ticket.SOURCE_SURVEY, reference='tx1')

        self.user.refresh_from_db()
        self.assertEqual(self.user.available_tickets, 1)
        self.assertEqual(self.user.total_tickets_earned, 1)

    def test_apply_all_sets_participation_to_balance(self):
        """Test apply_all_to_open_draw mirrors the balance into the draw"""
        LedgerService.award(self.user.id, 2, Ticket.SOURCE_SURVEY)

        applied = LedgerService.apply_all_to_open_draw(self.user.id, self.draw.id)

        self.draw.refresh_from_db()
        participation = DrawParticipation.objects.get(user=self.user, draw=self.draw)
        self.assertEqual(applied, 2)
        self.assertEqual(participation.tickets_used, 2)
        self.assertEqual(self.draw.total_tickets, 2)
        self.assertEqual(Ticket.objects.filter(user=self.user, is_used=True, draw=self.draw).count(), 2)

    def test_apply_all_is_idempotent(self):
        """Test re-applying an unchanged balance writes nothing"""
        LedgerService.award(self.user.id, 1, Ticket.SOURCE_SURVEY)
        LedgerService.apply_all_to_open_draw(self.user.id, self.draw.id)
        participation = DrawParticipation.objects.get(user=self.user, draw=self.draw)

        LedgerService.apply_all_to_open_draw(self.user.id, self.draw.id)

        self.assertEqual(DrawParticipation.objects.filter(user=self.user).count(), 1)
        refreshed = DrawParticipation.objects.get(pk=participation.pk)
        self.assertEqual(refreshed.tickets_used, 1)
        self.assertEqual(refreshed.updated_at, participation.updated_at)

    def test_apply_all_with_zero_balance_creates_nothing(self):
        """Test a zero balance does not create a participation row"""
        applied = LedgerService.apply_all_to_open_draw(self.user.id, self.draw.id)

        self.assertEqual(applied, 0)
        self.assertFalse(DrawParticipation.objects.exists())

    def test_apply_all_rejects_closed_draw(self):
        """Test applying to a closed draw fails"""
        LedgerService.award(self.user.id, 1, Ticket.SOURCE_SURVEY)
        Draw.objects.filter(pk=self.draw.pk).update(status=Draw.STATUS_CANCELLED)

        with self.assertRaises(DrawNotOpenError):
            LedgerService.apply_all_to_open_draw(self.user.id, self.draw.id)

    def test_draw_total_sums_all_participants(self):
        """Test draw total is recomputed from every participation row"""
        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)
        LedgerService.credit(self.other.id, 3, Ticket.SOURCE_REFERRAL, draw=self.draw)
        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)

        self.draw.refresh_from_db()
        self.assertEqual(self.draw.total_tickets, 5)
        self.assertEqual(DrawParticipation.objects.get(user=self.user).tickets_used, 2)

    def test_reset_all_conserves_lifetime_totals(self):
        """Test reset_all zeroes balances but keeps totals and records"""
        LedgerService.credit(self.user.id, 2, Ticket.SOURCE_SURVEY, draw=self.draw)
        LedgerService.credit(self.other.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)

        reset_count = LedgerService.reset_all()

        self.assertEqual(reset_count, 2)
        for user, earned in ((self.user, 2), (self.other, 1)):
            user.refresh_from_db()
            self.assertEqual(user.available_tickets, 0)
            self.assertEqual(user.total_tickets_earned, earned)
        self.assertEqual(Ticket.objects.count(), 3)

    def test_reset_one_returns_previous_balance(self):
        """Test reset_one zeroes a single user"""
        LedgerService.award(self.user.id, 2, Ticket.SOURCE_SURVEY)
        LedgerService.award(self.other.id, 1, Ticket.SOURCE_SURVEY)

        self.assertEqual(LedgerService.reset_one(self.user.id), 2)

        self.user.refresh_from_db()
        self.other.refresh_from_db()
        self.assertEqual(self.user.available_tickets, 0)
        self.assertEqual(self.other.available_tickets, 1)

    def test_reset_one_withdraws_entries_from_open_draw(self):
        """Test reset_one removes the user from the open draw and later credits stay consistent"""
        for reference in ('a', 'b', 'c'):
            LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, reference=reference, draw=self.draw)
        LedgerService.credit(self.other.id, 1, Ticket.SOURCE_SURVEY, reference='o', draw=self.draw)

        self.assertEqual(LedgerService.reset_one(self.user.id), 3)

        self.draw.refresh_from_db()
        self.assertFalse(DrawParticipation.objects.filter(user=self.user).exists())
        self.assertFalse(Ticket.objects.filter(user=self.user, is_used=True).exists())
        self.assertEqual(self.draw.total_tickets, 1)
        self.assertEqual(DrawService.build_pool(self.draw), [self.other.id])

        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, reference='d', draw=self.draw)

        self.user.refresh_from_db()
        self.assertEqual(self.user.available_tickets, 1)
        self.assertEqual(self.user.total_tickets_earned, 4)
        self.assertEqual(DrawParticipation.objects.get(user=self.user, draw=self.draw).tickets_used, 1)
        self.assertEqual(
            list(Ticket.objects.filter(user=self.user, is_used=True).values_list('confirmation_code', flat=True)),
            ['SURVEY_d_0']
        )
        self.assertFalse(ReconciliationService.audit(self.user.id)['has_discrepancy'])
        self.assertEqual(ReconciliationService.repair(self.user.id)['writes'], 0)
        self.assertEqual(DrawService.build_pool(self.draw).count(self.user.id), 1)

    def test_apply_all_releases_surplus_tickets(self):
        """Test applied tickets shrink with the balance"""
        LedgerService.credit(self.user.id, 2, Ticket.SOURCE_SURVEY, draw=self.draw)
        User.objects.filter(pk=self.user.pk).update(available_tickets=1)

        LedgerService.apply_all_to_open_draw(self.user.id, self.draw.id)

        self.draw.refresh_from_db()
        self.assertEqual(DrawParticipation.objects.get(user=self.user).tickets_used, 1)
        self.assertEqual(Ticket.objects.filter(user=self.user, draw=self.draw, is_used=True).count(), 1)
        self.assertEqual(self.draw.total_tickets, 1)

    def test_apply_requested_insufficient_balance(self):
        """Test asking for more tickets than held fails without changes"""
        LedgerService.award(self.user.id, 1, Ticket.SOURCE_SURVEY)

        with self.assertRaises(InsufficientBalanceError):
            LedgerService.apply_requested(self.user.id, 2)

        self.user.refresh_from_db()
        self.assertEqual(self.user.available_tickets, 1)
        self.assertFalse(DrawParticipation.objects.exists())

    def test_apply_requested_without_tickets(self):
        """Test manual participation with an empty balance fails"""
        with self.assertRaises(InsufficientBalanceError):
            LedgerService.apply_requested(self.user.id)

    def test_apply_requested_applies_balance(self):
        """Test manual participation applies the full balance"""
        LedgerService.award(self.user.id, 2, Ticket.SOURCE_SURVEY)

        draw, applied = LedgerService.apply_requested(self.user.id, 1)

        self.assertEqual(draw, self.draw)
        self.assertEqual(applied, 2)
        self.assertEqual(DrawParticipation.objects.get(user=self.user).tickets_used, 2)


class IdempotencyGuardTestCase(TestCase):
    """Test cases for IdempotencyGuard"""

    def test_check_and_reserve_once(self):
        """Test the second reservation of an event id is rejected"""
        IdempotencyGuard.check_and_reserve('evt-1')

        with self.assertRaises(DuplicateEventError):
            IdempotencyGuard.check_and_reserve('evt-1')

        self.assertTrue(IdempotencyGuard.is_processed('evt-1'))
        self.assertEqual(ProcessedEvent.objects.count(), 1)

    def test_reservation_rolls_back_with_failed_credit(self):
        """Test a failed transaction leaves no reservation"""
        with self.assertRaises(RuntimeError):
            with transaction.atomic():
                IdempotencyGuard.check_and_reserve('evt-2')
                raise RuntimeError('credit failed')

        self.assertFalse(IdempotencyGuard.is_processed('evt-2'))


class DrawServiceTestCase(TestCase):
    """Test cases for DrawService"""

    def setUp(self):
        """Set up test data"""
        self.alice = User.objects.create_user(email='alice@example.com')
        self.bob = User.objects.create_user(email='bob@example.com')
        self.draw = DrawService.get_or_create_open_draw()

    def test_next_draw_datetime_is_next_thursday_evening(self):
        """Test next close time is Thursday 18:30 IST"""
        monday = datetime(2024, 1, 15, 12, 0, tzinfo=IST)

        next_draw = DrawService.next_draw_datetime(monday)

        self.assertEqual(next_draw.weekday(), 3)
        self.assertEqual((next_draw.day, next_draw.hour, next_draw.minute), (18, 18, 30))

    def test_next_draw_datetime_after_close_moves_a_week(self):
        """Test a Thursday after close time rolls over to next week"""
        thursday_late = datetime(2024, 1, 18, 19, 0, tzinfo=IST)

        next_draw = DrawService.next_draw_datetime(thursday_late)

        self.assertEqual(next_draw.date(), datetime(2024, 1, 25).date())

    def test_get_or_create_returns_existing_open_draw(self):
        """Test the open draw is reused"""
        self.assertEqual(DrawService.get_or_create_open_draw(), self.draw)
        self.assertEqual(Draw.objects.count(), 1)
        self.assertEqual(self.draw.prize_amount, 50)
        self.assertGreater(self.draw.draw_date, timezone.now())

    def test_only_one_open_draw_allowed(self):
        """Test storage rejects a second open draw"""
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Draw.objects.create(draw_date=timezone.now() + timedelta(days=14))

    def test_default_prize_from_setting(self):
        """Test prize amount comes from the default_prize_amount setting"""
        Draw.objects.filter(pk=self.draw.pk).update(status=Draw.STATUS_CANCELLED)
        SettingsStore.set('default_prize_amount', '75')

        draw = DrawService.get_or_create_open_draw()

        self.assertEqual(draw.prize_amount, 75)

    def test_get_or_create_closes_overdue_draw(self):
        """Test an overdue open draw is closed before a new one is created"""
        Draw.objects.filter(pk=self.draw.pk).update(draw_date=timezone.now() - timedelta(hours=1))

        draw = DrawService.get_or_create_open_draw()

        self.draw.refresh_from_db()
        self.assertNotEqual(draw.pk, self.draw.pk)
        self.assertEqual(self.draw.status, Draw.STATUS_CANCELLED)
        self.assertEqual(draw.status, Draw.STATUS_OPEN)

    def test_build_pool_one_entry_per_ticket(self):
        """Test the pool holds one entry per ticket used"""
        LedgerService.credit(self.alice.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)
        LedgerService.credit(self.bob.id, 3, Ticket.SOURCE_REFERRAL, draw=self.draw)

        pool = DrawService.build_pool(self.draw)

        self.assertEqual(len(pool), 4)
        self.assertEqual(pool.count(self.alice.id), 1)
        self.assertEqual(pool.count(self.bob.id), 3)

    def test_build_pool_falls_back_to_ticket_records(self):
        """Test the pool is rebuilt from applied tickets when aggregates are zero"""
        LedgerService.credit(self.alice.id, 2, Ticket.SOURCE_SURVEY, draw=self.draw)
        DrawParticipation.objects.update(tickets_used=0)

        pool = DrawService.build_pool(self.draw)

        self.assertEqual(pool, [self.alice.id, self.alice.id])

    def test_proportional_selection(self):
        """Test a 1:3 pool converges to 25%/75%"""
        pool = ['A'] + ['B'] * 3
        rng = random.Random(42)
        trials = 20000

        wins_b = sum(1 for _ in range(trials) if DrawService.select_weighted_winner(pool, rng) == 'B')

        share = wins_b / trials
        self.assertGreater(share, 0.72)
        self.assertLess(share, 0.78)

    def test_select_from_empty_pool_raises(self):
        """Test selecting from an empty pool fails"""
        with self.assertRaises(ValueError):
            DrawService.select_weighted_winner([])

    def test_close_draw_selects_winner_and_resets(self):
        """Test closing a draw records the winner and resets balances"""
        LedgerService.credit(self.alice.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)
        LedgerService.credit(self.bob.id, 3, Ticket.SOURCE_REFERRAL, draw=self.draw)

        draw = DrawService.close_draw(self.draw.id, rng=random.Random(7))

        self.assertEqual(draw.status, Draw.STATUS_COMPLETED)
        self.assertIn(draw.winner_id, (self.alice.id, self.bob.id))
        self.assertEqual(draw.total_tickets, 4)
        self.assertIsNotNone(draw.completed_at)

        winner = User.objects.get(pk=draw.winner_id)
        self.assertTrue(winner.has_won)
        self.assertIsNotNone(winner.last_win_date)
        self.assertTrue(DrawParticipation.objects.get(draw=draw, user=winner).is_winner)
        self.assertEqual(DrawParticipation.objects.filter(draw=draw, is_winner=True).count(), 1)

        for user, earned in ((self.alice, 1), (self.bob, 3)):
            user.refresh_from_db()
            self.assertEqual(user.available_tickets, 0)
            self.assertEqual(user.total_tickets_earned, earned)

    def test_close_draw_enqueues_result_emails(self):
        """Test winner and non-winner emails are queued with a bonus token"""
        LedgerService.credit(self.alice.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)
        LedgerService.credit(self.bob.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)

        draw = DrawService.close_draw(self.draw.id, winner_user_id=self.alice.id)

        emails = SideEffectTask.objects.filter(kind=SideEffectTask.KIND_SEND_EMAIL, dedupe_key__startswith=f'draw_email:{draw.id}:')
        templates = {task.payload['to']: task.payload['template'] for task in emails}
        self.assertEqual(templates, {'alice@example.com': 'draw_winner', 'bob@example.com': 'draw_non_winner'})

        bonus = Setting.objects.get(key__startswith='non_winner_email_nw_')
        self.assertIn(f'"user_id": {self.bob.id}', bonus.value)

    def test_close_draw_cancels_without_participants(self):
        """Test an empty draw is cancelled without touching balances"""
        LedgerService.award(self.alice.id, 1, Ticket.SOURCE_SURVEY)

        draw = DrawService.close_draw(self.draw.id)

        self.alice.refresh_from_db()
        self.assertEqual(draw.status, Draw.STATUS_CANCELLED)
        self.assertIsNone(draw.winner)
        self.assertEqual(self.alice.available_tickets, 1)
        self.assertFalse(SideEffectTask.objects.exists())

    def test_close_draw_twice_raises(self):
        """Test a closed draw cannot be closed again"""
        DrawService.close_draw(self.draw.id)

        with self.assertRaises(DrawNotOpenError):
            DrawService.close_draw(self.draw.id)

    def test_manual_winner_requires_participation(self):
        """Test manual selection of a non-participant is rejected"""
        LedgerService.credit(self.alice.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)

        with self.assertRaises(InvalidWinnerError):
            DrawService.close_draw(self.draw.id, winner_user_id=self.bob.id)

        self.draw.refresh_from_db()
        self.alice.refresh_from_db()
        self.assertEqual(self.draw.status, Draw.STATUS_OPEN)
        self.assertEqual(self.alice.available_tickets, 1)

    def test_manual_winner(self):
        """Test manual selection closes the draw for the chosen user"""
        LedgerService.credit(self.alice.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)
        LedgerService.credit(self.bob.id, 2, Ticket.SOURCE_SURVEY, draw=self.draw)

        draw = DrawService.close_draw(self.draw.id, winner_user_id=self.alice.id)

        self.assertEqual(draw.winner_id, self.alice.id)
        self.bob.refresh_from_db()
        self.assertFalse(self.bob.has_won)

    def test_close_due_draws(self):
        """Test the sweep only closes draws whose time has passed"""
        LedgerService.credit(self.alice.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)

        self.assertEqual(DrawService.close_due_draws(), [])

        Draw.objects.filter(pk=self.draw.pk).update(draw_date=timezone.now() - timedelta(minutes=1))
        closed = DrawService.close_due_draws()

        self.assertEqual(len(closed), 1)
        self.assertEqual(closed[0].winner_id, self.alice.id)
        self.assertEqual(DrawService.close_due_draws(), [])


@patch('apps.lottery.services.requests.post', return_value=email_ok())
class PostbackViewTestCase(APITestCase):
    """Test cases for PostbackView"""

    def setUp(self):
        """Set up test data"""
        self.user = User.objects.create_user(email='user@example.com', name='User')
        self.url = '/api/lottery/postback/'

    def test_scenario_credit_duplicate_and_win(self, mock_post):
        """Test credit, duplicate redelivery and a single-participant draw"""
        response = self.client.get(self.url, postback_params(self.user.id, 'tx1'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], PostbackAudit.OUTCOME_CREDITED)
        self.user.refresh_from_db()
        self.assertEqual(self.user.available_tickets, 1)
        participation = DrawParticipation.objects.get(user=self.user)
        self.assertEqual(participation.tickets_used, 1)

        response = self.client.get(self.url, postback_params(self.user.id, 'tx1'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], PostbackAudit.OUTCOME_DUPLICATE)
        self.user.refresh_from_db()
        self.assertEqual(self.user.available_tickets, 1)
        self.assertEqual(Ticket.objects.filter(user=self.user).count(), 1)

        draw = DrawService.close_draw(participation.draw_id)

        self.user.refresh_from_db()
        self.assertEqual(draw.winner_id, self.user.id)
        self.assertEqual(self.user.available_tickets, 0)
        self.assertEqual(self.user.total_tickets_earned, 1)
        self.assertTrue(self.user.has_won)

    def test_invalid_hash_rejected(self, mock_post):
        """Test a bad hash returns 403 and credits nothing"""
        params = postback_params(self.user.id)
        params['auth_hash'] = 'not-the-hash'

        response = self.client.get(self.url, params)

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertFalse(Ticket.objects.exists())
        self.assertEqual(PostbackAudit.objects.get().outcome, PostbackAudit.OUTCOME_AUTH_FAILED)

    def test_test_mode_ignored_when_disabled(self, mock_post):
        """Test test_mode cannot bypass the hash unless enabled"""
        params = postback_params(self.user.id, test_mode='1')
        del params['auth_hash']

        response = self.client.get(self.url, params)

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    @override_settings(POSTBACK_TEST_MODE_ENABLED=True)
    def test_test_mode_bypass_when_enabled(self, mock_post):
        """Test enabled test mode credits without a hash"""
        params = postback_params(self.user.id, test_mode='1')
        del params['auth_hash']

        response = self.client.get(self.url, params)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], PostbackAudit.OUTCOME_CREDITED)
        self.assertTrue(PostbackAudit.objects.get().test_mode)

    def test_not_completed_returns_200_without_credit(self, mock_post):
        """Test a non-completed status is acknowledged but not credited"""
        response = self.client.get(self.url, postback_params(self.user.id, completion_status='2'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], PostbackAudit.OUTCOME_NOT_COMPLETED)
        self.assertFalse(Ticket.objects.exists())
        self.assertFalse(ProcessedEvent.objects.exists())

    def test_missing_parameters(self, mock_post):
        """Test structurally invalid postbacks return 400"""
        response = self.client.get(self.url, {'user_id': str(self.user.id)})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(PostbackAudit.objects.get().outcome, PostbackAudit.OUTCOME_INVALID)

    def test_unknown_user(self, mock_post):
        """Test an unknown user returns 404"""
        response = self.client.get(self.url, postback_params(999999))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(PostbackAudit.objects.get().outcome, PostbackAudit.OUTCOME_UNKNOWN_USER)

    def test_preexisting_processed_event(self, mock_post):
        """Test an event already recorded is treated as a duplicate"""
        ProcessedEvent.objects.create(event_id='tx-old', user=self.user)

        response = self.client.get(self.url, postback_params(self.user.id, 'tx-old'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], PostbackAudit.OUTCOME_DUPLICATE)
        self.assertFalse(Ticket.objects.exists())

    def test_provider_parameter_aliases(self, mock_post):
        """Test trans_id/status/hash aliases are accepted"""
        params = {
            'user_id': str(self.user.id),
            'trans_id': 'tx-alias',
            'status': '1',
            'hash': generate_secure_hash(self.user.id),
        }

        response = self.client.get(self.url, params)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(Ticket.objects.filter(confirmation_code='SURVEY_tx-alias_0').exists())

    def test_post_body(self, mock_post):
        """Test postbacks may arrive as a POST body"""
        response = self.client.post(self.url, postback_params(self.user.id, 'tx-post'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], PostbackAudit.OUTCOME_CREDITED)

    def test_every_notification_audited(self, mock_post):
        """Test an audit row is written for each outcome"""
        self.client.get(self.url, postback_params(self.user.id, 'tx-a'))
        self.client.get(self.url, postback_params(self.user.id, 'tx-a'))
        self.client.get(self.url, postback_params(self.user.id, 'tx-b', completion_status='0'))

        outcomes = list(PostbackAudit.objects.order_by('id').values_list('outcome', flat=True))
        self.assertEqual(
            outcomes,
            [PostbackAudit.OUTCOME_CREDITED, PostbackAudit.OUTCOME_DUPLICATE, PostbackAudit.OUTCOME_NOT_COMPLETED]
        )

    def test_side_effects_queued_not_run(self, mock_post):
        """Test email and instant notification are queued, not sent inline"""
        self.client.get(self.url, postback_params(self.user.id, 'tx-fx'))

        kinds = set(SideEffectTask.objects.values_list('kind', flat=True))
        self.assertEqual(kinds, {SideEffectTask.KIND_SEND_EMAIL, SideEffectTask.KIND_NOTIFY_INSTANT})
        mock_post.assert_not_called()

    def test_transaction_timeout_is_retryable(self, mock_post):
        """Test a ledger timeout returns 500 and keeps no reservation"""
        with patch('apps.lottery.postback.LedgerService.credit', side_effect=TransactionTimeoutError()):
            response = self.client.get(self.url, postback_params(self.user.id, 'tx-busy'))

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertFalse(ProcessedEvent.objects.filter(event_id='tx-busy').exists())
        self.assertEqual(PostbackAudit.objects.get().outcome, PostbackAudit.OUTCOME_ERROR)

        response = self.client.get(self.url, postback_params(self.user.id, 'tx-busy'))

        self.assertEqual(response.data['outcome'], PostbackAudit.OUTCOME_CREDITED)

    def test_redelivery_after_emergency_ticket_is_duplicate(self, mock_post):
        """Test an event covered by an emergency ticket is not credited again"""
        with patch('apps.lottery.postback.LedgerService.credit', side_effect=TransactionTimeoutError()):
            response = self.client.get(self.url, postback_params(self.user.id, 'txE'))
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)

        ticket_id = ReconciliationService.issue_emergency_ticket(self.user.id, 'txE')
        self.assertIsNotNone(ticket_id)

        response = self.client.get(self.url, postback_params(self.user.id, 'txE'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], PostbackAudit.OUTCOME_DUPLICATE)
        self.user.refresh_from_db()
        self.assertEqual(Ticket.objects.filter(user=self.user).count(), 1)
        self.assertEqual(self.user.available_tickets, 1)
        self.assertEqual(self.user.total_tickets_earned, 1)


@patch('apps.lottery.services.requests.post', return_value=email_ok())
class ReferralPropagationTestCase(TestCase):
    """Test cases for referral propagation"""

    def setUp(self):
        """Set up test data"""
        self.referrer = User.objects.create_user(email='referrer@example.com')
        self.referred = User.objects.create_user(email='referred@example.com', referred_by=self.referrer)

    def seed_referrer_survey(self):
        LedgerService.credit(self.referrer.id, 1, Ticket.SOURCE_SURVEY, reference='seed')

    def test_referrer_credited_once_despite_retries(self, mock_post):
        """Test five redeliveries of the first survey credit the referrer once"""
        self.seed_referrer_survey()

        for _ in range(5):
            PostbackService.process(postback_params(self.referred.id, 'ref-tx'))
        process_pending_tasks()
        process_pending_tasks()

        self.referrer.refresh_from_db()
        self.assertEqual(Ticket.objects.filter(user=self.referrer, source=Ticket.SOURCE_REFERRAL).count(), 1)
        self.assertEqual(self.referrer.available_tickets, 2)
        participation = DrawParticipation.objects.get(user=self.referrer)
        self.assertEqual(participation.tickets_used, 2)

    def test_only_first_survey_propagates(self, mock_post):
        """Test later surveys do not queue referral credit"""
        self.seed_referrer_survey()

        PostbackService.process(postback_params(self.referred.id, 'first'))
        PostbackService.process(postback_params(self.referred.id, 'second'))
        process_pending_tasks()

        self.assertEqual(SideEffectTask.objects.filter(kind=SideEffectTask.KIND_PROPAGATE_REFERRAL).count(), 1)
        self.assertEqual(Ticket.objects.filter(user=self.referrer, source=Ticket.SOURCE_REFERRAL).count(), 1)

    def test_zero_survey_referrer_gets_nothing(self, mock_post):
        """Test a referrer without surveys receives no referral ticket"""
        PostbackService.process(postback_params(self.referred.id, 'ref-tx'))
        process_pending_tasks()

        self.referrer.refresh_from_db()
        self.assertEqual(self.referrer.available_tickets, 0)
        self.assertFalse(Ticket.objects.filter(user=self.referrer).exists())
        task = SideEffectTask.objects.get(kind=SideEffectTask.KIND_PROPAGATE_REFERRAL)
        self.assertEqual(task.status, SideEffectTask.STATUS_DONE)

    def test_propagate_is_idempotent(self, mock_post):
        """Test calling propagate twice awards one ticket"""
        self.seed_referrer_survey()

        first = ReferralService.propagate(self.referred.id)
        second = ReferralService.propagate(self.referred.id)

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertTrue(Ticket.objects.filter(confirmation_code=ReferralService.confirmation_code(self.referred.id)).exists())

    def test_propagate_without_referrer(self, mock_post):
        """Test users without a referrer propagate nothing"""
        self.assertIsNone(ReferralService.propagate(self.referrer.id))


class SideEffectTaskTestCase(TestCase):
    """Test cases for the side-effect task queue"""

    def test_enqueue_dedupes_by_key(self):
        """Test the same dedupe key returns the first task"""
        first = enqueue(SideEffectTask.KIND_NOTIFY_INSTANT, {'user_id': 1, 'event_id': 'a'}, dedupe_key='k1')
        second = enqueue(SideEffectTask.KIND_NOTIFY_INSTANT, {'user_id': 1, 'event_id': 'b'}, dedupe_key='k1')

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(SideEffectTask.objects.count(), 1)

    def test_email_task_success(self):
        """Test a successful email task is marked done"""
        enqueue(
            SideEffectTask.KIND_SEND_EMAIL,
            {'to': 'a@example.com', 'template': 'ticket_credited', 'context': {'name': 'A', 'available_tickets': 1, 'draw_date': '2024-01-18 18:30'}},
        )

        with patch('apps.lottery.services.requests.post', return_value=email_ok()) as mock_post:
            results = process_pending_tasks()

        self.assertEqual(results['DONE'], 1)
        self.assertEqual(mock_post.call_args.kwargs['json']['to'], ['a@example.com'])
        self.assertEqual(SideEffectTask.objects.get().status, SideEffectTask.STATUS_DONE)

    def test_email_task_retries_once_then_fails(self):
        """Test email delivery gets one bounded retry"""
        enqueue(
            SideEffectTask.KIND_SEND_EMAIL,
            {'to': 'a@example.com', 'template': 'draw_winner', 'context': {'name': 'A', 'draw_date': 'x', 'prize_amount': 50}},
        )

        with patch('apps.lottery.services.requests.post', side_effect=requests.exceptions.ConnectionError('down')):
            process_pending_tasks()
            task = SideEffectTask.objects.get()
            self.assertEqual(task.status, SideEffectTask.STATUS_PENDING)
            self.assertEqual(task.attempts, 1)
            self.assertGreater(task.next_attempt_at, timezone.now())

            self.assertEqual(process_pending_tasks()['DONE'], 0)

            SideEffectTask.objects.update(next_attempt_at=timezone.now() - timedelta(seconds=1))
            process_pending_tasks()

        task.refresh_from_db()
        self.assertEqual(task.status, SideEffectTask.STATUS_FAILED)
        self.assertEqual(task.attempts, 2)
        self.assertIn('down', task.last_error)

    def test_instant_notification_writes_setting(self):
        """Test instant notifications are stored as settings"""
        enqueue(SideEffectTask.KIND_NOTIFY_INSTANT, {'user_id': 7, 'event_id': 'tx9', 'message': 'hi'})

        process_pending_tasks()

        data = SettingsStore.get_json('instant_notification_7_tx9')
        self.assertEqual(data['message'], 'hi')
        self.assertFalse(data['read'])

    def test_run_task_skips_claimed_task(self):
        """Test a task claimed elsewhere is not run twice"""
        task = enqueue(SideEffectTask.KIND_NOTIFY_INSTANT, {'user_id': 1, 'event_id': 'x'})
        SideEffectTask.objects.filter(pk=task.pk).update(status=SideEffectTask.STATUS_RUNNING)

        self.assertIsNone(run_task(task))

    def test_stale_running_task_requeued(self):
        """Test tasks stuck in RUNNING are picked up again"""
        task = enqueue(SideEffectTask.KIND_NOTIFY_INSTANT, {'user_id': 1, 'event_id': 'stale'})
        SideEffectTask.objects.filter(pk=task.pk).update(
            status=SideEffectTask.STATUS_RUNNING,
            updated_at=timezone.now() - timedelta(hours=1),
        )

        results = process_pending_tasks()

        self.assertEqual(results['DONE'], 1)


class ReconciliationServiceTestCase(TestCase):
    """Test cases for ReconciliationService"""

    def setUp(self):
        """Set up test data"""
        self.user = User.objects.create_user(email='user@example.com')
        self.draw = DrawService.get_or_create_open_draw()
        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, reference='a', draw=self.draw)
        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, reference='b', draw=self.draw)

    def test_consistent_user_needs_no_repair(self):
        """Test repair on a consistent user writes nothing, twice"""
        report = ReconciliationService.audit(self.user.id)
        self.assertFalse(report['has_discrepancy'])
        self.assertEqual(report['ticket_count'], 2)
        self.assertEqual(report['participation_total'], 2)

        self.assertEqual(ReconciliationService.repair(self.user.id)['writes'], 0)
        self.assertEqual(ReconciliationService.repair(self.user.id)['writes'], 0)

    def test_repair_overwrites_mismatched_participation(self):
        """Test a drifted participation count is corrected"""
        DrawParticipation.objects.filter(user=self.user).update(tickets_used=5)
        Draw.objects.filter(pk=self.draw.pk).update(total_tickets=5)

        report = ReconciliationService.audit(self.user.id)
        self.assertTrue(report['has_discrepancy'])
        self.assertEqual(report['mismatched'][0]['actual'], 2)

        summary = ReconciliationService.repair(self.user.id)

        self.assertGreaterEqual(summary['writes'], 1)
        self.assertFalse(summary['audit']['has_discrepancy'])
        self.assertEqual(DrawParticipation.objects.get(user=self.user).tickets_used, 2)
        self.draw.refresh_from_db()
        self.assertEqual(self.draw.total_tickets, 2)

        second = ReconciliationService.repair(self.user.id)
        self.assertEqual(second['writes'], 0)
        self.assertFalse(second['had_discrepancy'])

    def test_repair_removes_orphaned_participation(self):
        """Test a participation row without tickets is deleted"""
        old_draw = Draw.objects.create(
            draw_date=timezone.now() - timedelta(days=7),
            status=Draw.STATUS_COMPLETED,
        )
        DrawParticipation.objects.create(user=self.user, draw=old_draw, tickets_used=3)

        summary = ReconciliationService.repair(self.user.id)

        self.assertTrue(summary['had_discrepancy'])
        self.assertFalse(DrawParticipation.objects.filter(draw=old_draw).exists())

    def test_repair_creates_missing_participation(self):
        """Test applied tickets without a participation row get one"""
        DrawParticipation.objects.filter(user=self.user).delete()

        summary = ReconciliationService.repair(self.user.id)

        self.assertEqual(DrawParticipation.objects.get(user=self.user, draw=self.draw).tickets_used, 2)
        self.assertFalse(summary['audit']['has_discrepancy'])

    def test_emergency_ticket_for_recorded_completion(self):
        """Test a user with no tickets but a recorded completion gets one ticket"""
        lost = User.objects.create_user(email='lost@example.com')
        PostbackAudit.objects.create(
            user=lost,
            raw_user_id=str(lost.id),
            transaction_id='tx-lost',
            completion_status='1',
            outcome=PostbackAudit.OUTCOME_ERROR,
        )

        with self.assertLogs('apps.lottery.emergency', level='WARNING'):
            ticket_id = ReconciliationService.issue_emergency_ticket(lost.id, 'tx-lost')

        lost.refresh_from_db()
        self.assertIsNotNone(ticket_id)
        self.assertEqual(lost.available_tickets, 1)
        self.assertTrue(Setting.objects.filter(key=f'emergency_verify_{ticket_id}').exists())
        self.assertEqual(DrawParticipation.objects.get(user=lost).tickets_used, 1)

        self.assertIsNone(ReconciliationService.issue_emergency_ticket(lost.id, 'tx-lost'))

    def test_emergency_ticket_requires_recorded_completion(self):
        """Test emergency issuance is refused without a completion record"""
        lost = User.objects.create_user(email='lost@example.com')

        self.assertIsNone(ReconciliationService.issue_emergency_ticket(lost.id, 'tx-none'))
        self.assertFalse(Ticket.objects.filter(user=lost).exists())

    def test_emergency_ticket_refused_for_processed_event(self):
        """Test an event already reserved cannot be credited through the emergency path"""
        lost = User.objects.create_user(email='lost@example.com')
        PostbackAudit.objects.create(
            user=lost,
            transaction_id='tx-seen',
            completion_status='1',
            outcome=PostbackAudit.OUTCOME_ERROR,
        )
        ProcessedEvent.objects.create(event_id='tx-seen', user=lost)

        self.assertIsNone(ReconciliationService.issue_emergency_ticket(lost.id, 'tx-seen'))
        lost.refresh_from_db()
        self.assertEqual(lost.available_tickets, 0)
        self.assertFalse(Ticket.objects.filter(user=lost).exists())

    def test_emergency_ticket_reserves_event(self):
        """Test issuing an emergency ticket records the event as processed"""
        lost = User.objects.create_user(email='lost@example.com')
        PostbackAudit.objects.create(
            user=lost,
            transaction_id='tx-lost',
            completion_status='1',
            outcome=PostbackAudit.OUTCOME_ERROR,
        )

        ReconciliationService.issue_emergency_ticket(lost.id, 'tx-lost')

        self.assertTrue(IdempotencyGuard.is_processed('tx-lost'))
        self.assertEqual(ProcessedEvent.objects.get(event_id='tx-lost').user, lost)

    def test_emergency_ticket_refused_for_user_with_tickets(self):
        """Test users holding tickets never get an emergency ticket"""
        PostbackAudit.objects.create(
            user=self.user,
            transaction_id='a',
            completion_status='1',
            outcome=PostbackAudit.OUTCOME_CREDITED,
        )

        self.assertIsNone(ReconciliationService.issue_emergency_ticket(self.user.id, 'a'))


class TicketVerificationViewTestCase(AuthenticatedAPITestCase):
    """Test cases for TicketVerificationView"""

    def setUp(self):
        """Set up test data"""
        self.user = User.objects.create_user(email='user@example.com')
        self.other = User.objects.create_user(email='other@example.com')
        self.admin = User.objects.create_superuser(email='admin@example.com', password='pass')
        self.url = '/api/lottery/tickets/verify/'
        LedgerService.credit(self.other.id, 1, Ticket.SOURCE_SURVEY)

    def test_owner_audit(self):
        """Test users can audit their own tickets"""
        response = self.client.get(self.url, **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['user_id'], self.user.id)
        self.assertFalse(response.data['has_discrepancy'])

    def test_user_cannot_audit_others(self):
        """Test non-admins cannot verify another user"""
        response = self.client.get(self.url, {'user_id': self.other.id}, **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_admin_repairs_other_user(self):
        """Test admins can repair another user's tickets"""
        DrawParticipation.objects.filter(user=self.other).update(tickets_used=4)

        response = self.client.post(self.url, {'user_id': self.other.id}, format='json', **self.get_auth_headers(self.admin))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['had_discrepancy'])
        self.assertEqual(DrawParticipation.objects.get(user=self.other).tickets_used, 1)

    def test_owner_emergency_ticket(self):
        """Test POST with event_id can issue an emergency ticket"""
        PostbackAudit.objects.create(
            user=self.user,
            transaction_id='tx-lost',
            completion_status='1',
            outcome=PostbackAudit.OUTCOME_ERROR,
        )

        response = self.client.post(self.url, {'event_id': 'tx-lost'}, format='json', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIsNotNone(response.data['emergency_ticket_id'])

    def test_unauthenticated(self):
        """Test verification requires authentication"""
        response = self.client.get(self.url)

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)


class CronCloseDrawsViewTestCase(APITestCase):
    """Test cases for CronCloseDrawsView"""

    def setUp(self):
        """Set up test data"""
        self.user = User.objects.create_user(email='user@example.com')
        self.url = '/api/lottery/cron/close-draws/'
        self.draw = DrawService.get_or_create_open_draw()
        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)

    def test_rejects_missing_secret(self):
        """Test the trigger requires the shared secret"""
        self.assertEqual(self.client.post(self.url).status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(self.client.post(f'{self.url}?secret=wrong').status_code, status.HTTP_403_FORBIDDEN)

    @override_settings(CRON_SECRET='')
    def test_disabled_without_configured_secret(self):
        """Test an empty configured secret disables the trigger"""
        response = self.client.post(f'{self.url}?secret=')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_noop_when_nothing_due(self):
        """Test the trigger is a no-op before the close time"""
        response = self.client.post(self.url, HTTP_X_CRON_SECRET='test-cron-secret')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 0)

    def test_closes_due_draw_once(self):
        """Test the trigger closes a due draw and is safe to repeat"""
        Draw.objects.filter(pk=self.draw.pk).update(draw_date=timezone.now() - timedelta(minutes=5))

        response = self.client.get(self.url, {'secret': 'test-cron-secret'})
        again = self.client.get(self.url, {'secret': 'test-cron-secret'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['closed'][0]['winner_id'], self.user.id)
        self.assertEqual(again.data['count'], 0)


class AdminSelectWinnerViewTestCase(AuthenticatedAPITestCase):
    """Test cases for AdminSelectWinnerView"""

    def setUp(self):
        """Set up test data"""
        self.user = User.objects.create_user(email='user@example.com')
        self.outsider = User.objects.create_user(email='outsider@example.com')
        self.admin = User.objects.create_superuser(email='admin@example.com', password='pass')
        self.url = '/api/lottery/admin/select-winner/'
        self.draw = DrawService.get_or_create_open_draw()
        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)

    def test_requires_admin(self):
        """Test regular users cannot pick winners"""
        response = self.client.post(self.url, {'user_id': self.user.id}, format='json', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_rejects_non_participant(self):
        """Test a user without tickets cannot be made winner"""
        response = self.client.post(self.url, {'user_id': self.outsider.id}, format='json', **self.get_auth_headers(self.admin))

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.draw.refresh_from_db()
        self.assertEqual(self.draw.status, Draw.STATUS_OPEN)

    def test_selects_winner(self):
        """Test the admin path closes the draw atomically"""
        response = self.client.post(self.url, {'user_id': self.user.id}, format='json', **self.get_auth_headers(self.admin))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.draw.refresh_from_db()
        self.assertEqual(self.draw.status, Draw.STATUS_COMPLETED)
        self.assertEqual(self.draw.winner_id, self.user.id)

    def test_closed_draw_conflict(self):
        """Test selecting a winner for a closed draw returns 409"""
        DrawService.close_draw(self.draw.id)

        response = self.client.post(
            self.url,
            {'user_id': self.user.id, 'draw_id': self.draw.id},
            format='json',
            **self.get_auth_headers(self.admin)
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)


class DrawViewsTestCase(AuthenticatedAPITestCase):
    """Test cases for participation and read-only draw views"""

    def setUp(self):
        """Set up test data"""
        self.user = User.objects.create_user(email='user@example.com')

    def test_current_draw(self):
        """Test the current draw is created on demand"""
        response = self.client.get('/api/lottery/current-draw/', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['draw']['status'], Draw.STATUS_OPEN)
        self.assertIsNone(response.data['participation'])
        self.assertEqual(Draw.objects.count(), 1)

    def test_participate_without_tickets(self):
        """Test participating with no tickets returns 400"""
        response = self.client.post('/api/lottery/participate/', {}, format='json', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('error', response.data)

    def test_participate_more_than_available(self):
        """Test asking for more tickets than held returns 400"""
        LedgerService.award(self.user.id, 1, Ticket.SOURCE_SURVEY)

        response = self.client.post('/api/lottery/participate/', {'tickets': 3}, format='json', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_participate(self):
        """Test participating applies the available balance"""
        LedgerService.award(self.user.id, 2, Ticket.SOURCE_SURVEY)

        response = self.client.post('/api/lottery/participate/', {}, format='json', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['tickets_applied'], 2)
        self.assertEqual(DrawParticipation.objects.get(user=self.user).tickets_used, 2)

    def test_my_tickets(self):
        """Test users see their own tickets"""
        LedgerService.credit(self.user.id, 2, Ticket.SOURCE_SURVEY)

        response = self.client.get('/api/lottery/my-tickets/', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)

    def test_recent_winners(self):
        """Test completed draws are listed publicly"""
        draw = DrawService.get_or_create_open_draw()
        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, draw=draw)
        DrawService.close_draw(draw.id)

        response = self.client.get('/api/lottery/recent-winners/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['winners'][0]['winner_name'], 'user')


class BonusTestCase(AuthenticatedAPITestCase):
    """Test cases for social follow and non-winner bonus tickets"""

    def setUp(self):
        """Set up test data"""
        self.user = User.objects.create_user(email='user@example.com')
        self.winner = User.objects.create_user(email='winner@example.com')

    def test_social_follow_requires_survey(self):
        """Test the social ticket needs a prior survey"""
        response = self.client.post('/api/lottery/social-follow/', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_social_follow_once(self):
        """Test the social ticket is awarded a single time"""
        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY)

        response = self.client.post('/api/lottery/social-follow/', **self.get_auth_headers())
        again = self.client.post('/api/lottery/social-follow/', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(again.status_code, status.HTTP_400_BAD_REQUEST)
        self.user.refresh_from_db()
        self.assertTrue(self.user.social_media_followed)
        self.assertEqual(self.user.available_tickets, 2)
        self.assertEqual(Ticket.objects.filter(user=self.user, source=Ticket.SOURCE_SOCIAL).count(), 1)

    def non_winner_token(self):
        draw = DrawService.get_or_create_open_draw()
        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, draw=draw)
        LedgerService.credit(self.winner.id, 1, Ticket.SOURCE_SURVEY, draw=draw)
        DrawService.close_draw(draw.id, winner_user_id=self.winner.id)
        key = Setting.objects.get(key__startswith='non_winner_email_').key
        return key[len('non_winner_email_'):]

    def test_non_winner_bonus(self):
        """Test a non-winner redeems two bonus tickets once"""
        token = self.non_winner_token()

        response = self.client.post('/api/lottery/non-winner-bonus/', {'token': token}, format='json', **self.get_auth_headers())
        again = self.client.post('/api/lottery/non-winner-bonus/', {'token': token}, format='json', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(again.status_code, status.HTTP_400_BAD_REQUEST)
        self.user.refresh_from_db()
        self.assertEqual(self.user.available_tickets, 2)
        self.assertEqual(self.user.total_tickets_earned, 3)

    def test_non_winner_bonus_other_user(self):
        """Test a bonus token cannot be used by someone else"""
        token = self.non_winner_token()

        response = self.client.post('/api/lottery/non-winner-bonus/', {'token': token}, format='json', **self.get_auth_headers(self.winner))

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_non_winner_bonus_bad_tokens(self):
        """Test malformed and unknown tokens are rejected"""
        bad = self.client.post('/api/lottery/non-winner-bonus/', {'token': 'abc'}, format='json', **self.get_auth_headers())
        unknown = self.client.post('/api/lottery/non-winner-bonus/', {'token': 'nw_missing'}, format='json', **self.get_auth_headers())

        self.assertEqual(bad.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(unknown.status_code, status.HTTP_404_NOT_FOUND)

    def test_bonus_service_awards_survey_tickets(self):
        """Test the bonus is two SURVEY tickets applied to the open draw"""
        token = self.non_winner_token()

        ticket_ids, applied = BonusService.claim_non_winner_bonus(self.user, token)

        self.assertEqual(len(ticket_ids), 2)
        self.assertEqual(applied, 2)
        self.assertEqual(set(Ticket.objects.filter(id__in=ticket_ids).values_list('source', flat=True)), {Ticket.SOURCE_SURVEY})


class SchedulerTestCase(TestCase):
    """Test cases for scheduler jobs"""

    def test_close_due_draws_job(self):
        """Test the scheduled job closes due draws"""
        user = User.objects.create_user(email='user@example.com')
        draw = DrawService.get_or_create_open_draw()
        LedgerService.credit(user.id, 1, Ticket.SOURCE_SURVEY, draw=draw)
        Draw.objects.filter(pk=draw.pk).update(draw_date=timezone.now() - timedelta(minutes=1))

        with patch('apps.lottery.scheduler.close_old_connections'):
            close_due_draws_job()

        draw.refresh_from_db()
        self.assertEqual(draw.status, Draw.STATUS_COMPLETED)

    def test_close_due_draws_job_logs_errors(self):
        """Test job errors are logged, not raised"""
        with patch('apps.lottery.services.DrawService.close_due_draws', side_effect=RuntimeError('boom')):
            with self.assertLogs('apps.lottery.scheduler', level='ERROR'):
                with patch('apps.lottery.scheduler.close_old_connections'):
                    close_due_draws_job()

    def test_scheduler_start_function(self):
        """Test that start_scheduler configures jobs correctly"""
        with patch('apps.lottery.scheduler.BackgroundScheduler') as mock_scheduler_class:
            mock_scheduler = MagicMock()
            mock_scheduler_class.return_value = mock_scheduler

            with patch('apps.lottery.scheduler.DjangoJobStore'):
                start_scheduler()

        mock_scheduler.add_jobstore.assert_called_once()
        self.assertEqual(mock_scheduler.add_job.call_count, 3)
        mock_scheduler.start.assert_called_once()

        job_ids = {call.kwargs['id'] for call in mock_scheduler.add_job.call_args_list}
        self.assertEqual(job_ids, {'close_due_draws_job', 'process_side_effect_tasks_job', 'delete_old_job_executions'})

        draw_trigger = next(
            call.kwargs['trigger'] for call in mock_scheduler.add_job.call_args_list
            if call.kwargs['id'] == 'close_due_draws_job'
        )
        fields = {field.name: str(field) for field in draw_trigger.fields}
        self.assertEqual(fields['day_of_week'], '3')
        self.assertEqual(fields['hour'], '18')
        self.assertEqual(fields['minute'], '30')


class ManagementCommandTestCase(TestCase):
    """Test cases for management commands"""

    def setUp(self):
        """Set up test data"""
        self.user = User.objects.create_user(email='user@example.com')
        self.draw = DrawService.get_or_create_open_draw()
        LedgerService.credit(self.user.id, 1, Ticket.SOURCE_SURVEY, draw=self.draw)

    def test_run_draw_without_due_draw(self):
        """Test run_draw leaves a future draw open"""
        out = StringIO()
        call_command('run_draw', stdout=out)

        self.draw.refresh_from_db()
        self.assertEqual(self.draw.status, Draw.STATUS_OPEN)
        self.assertIn('No draw is due', out.getvalue())

    def test_run_draw_force(self):
        """Test run_draw --force closes the open draw"""
        out = StringIO()
        call_command('run_draw', '--force', stdout=out)

        self.draw.refresh_from_db()
        self.assertEqual(self.draw.status, Draw.STATUS_COMPLETED)
        self.assertEqual(self.draw.winner_id, self.user.id)

    def test_reconcile_tickets_repair(self):
        """Test reconcile_tickets --repair fixes drift"""
        DrawParticipation.objects.filter(user=self.user).update(tickets_used=9)
        out = StringIO()

        call_command('reconcile_tickets', '--repair', stdout=out)

        self.assertEqual(DrawParticipation.objects.get(user=self.user).tickets_used, 1)
        self.assertIn('repaired 1', out.getvalue())

    def test_reconcile_tickets_report(self):
        """Test reconcile_tickets reports consistency"""
        out = StringIO()
        call_command('reconcile_tickets', '--user', str(self.user.id), stdout=out)

        self.assertIn('all consistent', out.getvalue())

    def test_process_tasks(self):
        """Test process_tasks drains the queue"""
        enqueue(SideEffectTask.KIND_NOTIFY_INSTANT, {'user_id': self.user.id, 'event_id': 'x'})
        out = StringIO()

        call_command('process_tasks', stdout=out)

        self.assertIn('Done: 1', out.getvalue())


class GunicornConfigTestCase(TestCase):
    """Test cases for the production gunicorn config hooks"""

    def load_config(self):
        path = Path(settings.BASE_DIR) / 'compose' / 'prod' / 'gunicorn.conf.py'
        module_spec = importlib.util.spec_from_file_location('gunicorn_conf', path)
        module = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)
        return module

    def test_scheduler_runs_in_preloaded_master(self):
        """Test the app is preloaded so the scheduler starts once"""
        config = self.load_config()

        self.assertTrue(config.preload_app)
        self.assertEqual(config.wsgi_app, 'core.wsgi:application')
        self.assertNotIn('%(q)s', config.access_log_format)

    def test_post_fork_closes_inherited_connections(self):
        """Test workers drop database connections opened by the master"""
        config = self.load_config()

        with patch('django.db.connections') as mock_connections:
            config.post_fork(MagicMock(), MagicMock())

        mock_connections.close_all.assert_called_once()

    def test_when_ready_logs_scheduler_state(self):
        """Test the ready hook reports whether the scheduler runs"""
        config = self.load_config()
        server = MagicMock()

        config.when_ready(server)

        self.assertIn('disabled', server.log.info.call_args.args[0])
