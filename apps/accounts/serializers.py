from rest_framework import serializers
from django.contrib.auth import get_user_model

User = get_user_model()


class UserProfileSerializer(serializers.ModelSerializer):
    """
    Serializer for user profile and ticket balances
    """
    class Meta:
        model = User
        fields = [
            'id',
            'email',
            'name',
            'available_tickets',
            'total_tickets_earned',
            'has_won',
            'last_win_date',
            'referral_code',
            'social_media_followed',
            'created_at',
        ]
        read_only_fields = [
            'id',
            'email',
            'available_tickets',
            'total_tickets_earned',
            'has_won',
            'last_win_date',
            'referral_code',
            'social_media_followed',
            'created_at',
        ]


class ApplyReferralCodeSerializer(serializers.Serializer):
    referral_code = serializers.CharField(
        max_length=16,
        help_text="Referral code of the user who invited you"
    )


class ReferralStatsSerializer(serializers.Serializer):
    referral_code = serializers.CharField()
    total_referrals = serializers.IntegerField()
    active_referrals = serializers.IntegerField()
    referral_tickets_earned = serializers.IntegerField()
