"""
Tests for accounts app views and services
"""
from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APITestCase
from rest_framework_simplejwt.tokens import RefreshToken

from apps.lottery.models import Ticket
from apps.lottery.services import LedgerService

from .services import ReferralCodeService

User = get_user_model()


class UserModelTestCase(TestCase):
    """Test cases for the custom User model"""

    def test_create_user_with_email(self):
        """Test users are keyed by a normalized email"""
        user = User.objects.create_user(email='Alice@EXAMPLE.com', password='secret')

        self.assertEqual(user.email, 'Alice@example.com')
        self.assertTrue(user.check_password('secret'))
        self.assertEqual(user.available_tickets, 0)
        self.assertEqual(user.total_tickets_earned, 0)
        self.assertFalse(user.is_staff)

    def test_create_user_requires_email(self):
        """Test creating a user without email fails"""
        with self.assertRaises(ValueError):
            User.objects.create_user(email='')

    def test_create_superuser(self):
        """Test superusers are staff"""
        admin = User.objects.create_superuser(email='admin@example.com', password='pass')

        self.assertTrue(admin.is_staff)
        self.assertTrue(admin.is_superuser)

    def test_referral_code_generated(self):
        """Test every user gets a distinct referral code"""
        first = User.objects.create_user(email='a@example.com')
        second = User.objects.create_user(email='b@example.com')

        self.assertEqual(len(first.referral_code), 8)
        self.assertNotEqual(first.referral_code, second.referral_code)

        code = first.referral_code
        first.name = 'Renamed'
        first.save()
        self.assertEqual(first.referral_code, code)


class ReferralCodeServiceTestCase(TestCase):
    """Test cases for ReferralCodeService"""

    def setUp(self):
        """Set up test data"""
        self.referrer = User.objects.create_user(email='referrer@example.com')
        self.user = User.objects.create_user(email='user@example.com')

    def test_apply_referral_code(self):
        """Test a valid code sets referred_by"""
        referrer = ReferralCodeService.apply_referral_code(self.user, self.referrer.referral_code.lower())

        self.user.refresh_from_db()
        self.assertEqual(referrer, self.referrer)
        self.assertEqual(self.user.referred_by, self.referrer)

    def test_invalid_code(self):
        """Test an unknown code is rejected"""
        with self.assertRaises(ValueError):
            ReferralCodeService.apply_referral_code(self.user, 'NOPE')

    def test_self_referral(self):
        """Test users cannot refer themselves"""
        with self.assertRaises(ValueError):
            ReferralCodeService.apply_referral_code(self.user, self.user.referral_code)

    def test_referral_loop(self):
        """Test A -> B -> A is rejected"""
        ReferralCodeService.apply_referral_code(self.user, self.referrer.referral_code)

        with self.assertRaises(ValueError):
            ReferralCodeService.apply_referral_code(self.referrer, self.user.referral_code)

        self.referrer.refresh_from_db()
        self.assertIsNone(self.referrer.referred_by)

    def test_code_applied_once(self):
        """Test a referrer cannot be replaced"""
        other = User.objects.create_user(email='other@example.com')
        ReferralCodeService.apply_referral_code(self.user, self.referrer.referral_code)

        with self.assertRaises(ValueError):
            ReferralCodeService.apply_referral_code(self.user, other.referral_code)

    def test_code_rejected_after_first_survey(self):
        """Test referral codes are only accepted before the first survey"""
        LedgerService.award(self.user.id, 1, Ticket.SOURCE_SURVEY)

        with self.assertRaises(ValueError):
            ReferralCodeService.apply_referral_code(self.user, self.referrer.referral_code)

    def test_stats(self):
        """Test referral statistics count active referrals and tickets"""
        ReferralCodeService.apply_referral_code(self.user, self.referrer.referral_code)
        User.objects.create_user(email='idle@example.com', referred_by=self.referrer)
        LedgerService.award(self.user.id, 1, Ticket.SOURCE_SURVEY)
        LedgerService.award(self.referrer.id, 1, Ticket.SOURCE_REFERRAL)

        stats = ReferralCodeService.get_stats(self.referrer)

        self.assertEqual(stats['total_referrals'], 2)
        self.assertEqual(stats['active_referrals'], 1)
        self.assertEqual(stats['referral_tickets_earned'], 1)


class AccountsAPITestCase(APITestCase):
    """Test cases for accounts endpoints"""

    def setUp(self):
        """Set up test data"""
        self.user = User.objects.create_user(email='user@example.com', password='secret')
        self.referrer = User.objects.create_user(email='referrer@example.com')

    def get_auth_headers(self, user=None):
        """Get JWT token for authenticated requests"""
        refresh = RefreshToken.for_user(user or self.user)
        return {'HTTP_AUTHORIZATION': f'Bearer {refresh.access_token}'}

    def test_obtain_token(self):
        """Test email/password login returns a token pair"""
        response = self.client.post(
            '/api/accounts/token/',
            {'email': 'user@example.com', 'password': 'secret'},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('access', response.data)
        self.assertIn('refresh', response.data)

    def test_profile(self):
        """Test the profile reports ticket balances"""
        LedgerService.award(self.user.id, 2, Ticket.SOURCE_SURVEY)

        response = self.client.get('/api/accounts/profile/', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['email'], 'user@example.com')
        self.assertEqual(response.data['available_tickets'], 2)
        self.assertEqual(response.data['total_tickets_earned'], 2)

    def test_profile_update_ignores_balances(self):
        """Test balances cannot be edited through the profile"""
        response = self.client.patch(
            '/api/accounts/profile/',
            {'name': 'New Name', 'available_tickets': 100},
            format='json',
            **self.get_auth_headers()
        )

        self.user.refresh_from_db()
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(self.user.name, 'New Name')
        self.assertEqual(self.user.available_tickets, 0)

    def test_profile_requires_authentication(self):
        """Test the profile rejects anonymous requests"""
        response = self.client.get('/api/accounts/profile/')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_blocked_user_rejected(self):
        """Test blocked users cannot authenticate"""
        User.objects.filter(pk=self.user.pk).update(is_blocked=True)

        response = self.client.get('/api/accounts/profile/', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_cookie_token(self):
        """Test the access token is read from the cookie"""
        self.client.cookies['access_token'] = str(RefreshToken.for_user(self.user).access_token)

        response = self.client.get('/api/accounts/profile/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['email'], 'user@example.com')

    def test_stale_cookie_falls_back_to_header(self):
        """Test an invalid cookie does not hide a valid header token"""
        self.client.cookies['access_token'] = 'expired-or-garbage'

        response = self.client.get('/api/accounts/profile/', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_blocked_user_rejected_via_cookie(self):
        """Test blocked users are rejected on the cookie path too"""
        User.objects.filter(pk=self.user.pk).update(is_blocked=True)
        self.client.cookies['access_token'] = str(RefreshToken.for_user(self.user).access_token)

        response = self.client.get('/api/accounts/profile/')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_apply_referral_code(self):
        """Test applying a referral code through the API"""
        response = self.client.post(
            '/api/accounts/referrals/apply/',
            {'referral_code': self.referrer.referral_code},
            format='json',
            **self.get_auth_headers()
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['referrer'], 'referrer')

    def test_apply_own_referral_code(self):
        """Test self-referral returns 400"""
        response = self.client.post(
            '/api/accounts/referrals/apply/',
            {'referral_code': self.user.referral_code},
            format='json',
            **self.get_auth_headers()
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('error', response.data)

    def test_referral_stats(self):
        """Test referral stats endpoint"""
        response = self.client.get('/api/accounts/referrals/', **self.get_auth_headers(self.referrer))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['referral_code'], self.referrer.referral_code)
        self.assertEqual(response.data['total_referrals'], 0)
