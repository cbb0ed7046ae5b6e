from django.db import transaction
from .models import User


class ReferralCodeService:
    """
    Attach a referrer to a user by referral code
    """

    @staticmethod
    def would_create_loop(user, referrer):
        """
        True if `user` already appears in the referrer chain of `referrer`
        """
        seen = set()
        current = referrer
        while current is not None and current.pk not in seen:
            if current.pk == user.pk:
                return True
            seen.add(current.pk)
            current = current.referred_by
        return False

    @staticmethod
    def apply_referral_code(user, code):
        """
        Set user.referred_by from a referral code.
        Raises ValueError with a user-facing message when not allowed.
        """
        from apps.lottery.models import Ticket

        code = (code or '').strip().upper()

        with transaction.atomic():
            user = User.objects.select_for_update().get(pk=user.pk)

            if user.referred_by_id:
                raise ValueError('A referral code has already been applied')

            if Ticket.objects.filter(user=user, source=Ticket.SOURCE_SURVEY).exists():
                raise ValueError('Referral codes must be applied before the first survey')

            referrer = User.objects.filter(referral_code=code).first()
            if referrer is None:
                raise ValueError('Invalid referral code')

            if referrer.pk == user.pk:
                raise ValueError('You cannot refer yourself')

            if ReferralCodeService.would_create_loop(user, referrer):
                raise ValueError('Referral loop detected')

            user.referred_by = referrer
            user.save(update_fields=['referred_by', 'updated_at'])

        return referrer

    @staticmethod
    def get_stats(user):
        from apps.lottery.models import Ticket

        referrals = user.referrals.all()
        return {
            'referral_code': user.referral_code,
            'total_referrals': referrals.count(),
            'active_referrals': referrals.filter(tickets__source=Ticket.SOURCE_SURVEY).distinct().count(),
            'referral_tickets_earned': Ticket.objects.filter(user=user, source=Ticket.SOURCE_REFERRAL).count(),
        }
