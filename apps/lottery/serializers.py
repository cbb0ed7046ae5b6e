from rest_framework import serializers
from .models import Draw, DrawParticipation, Ticket


class TicketSerializer(serializers.ModelSerializer):
    """
    Serializer for Ticket model
    """
    class Meta:
        model = Ticket
        fields = [
            'id',
            'source',
            'confirmation_code',
            'is_used',
            'draw',
            'created_at',
        ]
        read_only_fields = fields


class DrawSerializer(serializers.ModelSerializer):
    """
    Serializer for Draw model
    """
    winner_name = serializers.SerializerMethodField()

    class Meta:
        model = Draw
        fields = [
            'id',
            'draw_date',
            'prize_amount',
            'total_tickets',
            'status',
            'winner_name',
            'completed_at',
        ]
        read_only_fields = fields

    def get_winner_name(self, obj):
        if obj.winner is None:
            return None
        return obj.winner.name or obj.winner.email.split('@')[0]


class DrawParticipationSerializer(serializers.ModelSerializer):
    class Meta:
        model = DrawParticipation
        fields = ['draw', 'tickets_used', 'is_winner', 'updated_at']
        read_only_fields = fields


class ParticipateSerializer(serializers.Serializer):
    """
    Number of tickets to apply; all available tickets when omitted
    """
    tickets = serializers.IntegerField(
        required=False,
        min_value=1,
        help_text="Tickets to apply (defaults to all available)"
    )


class SelectWinnerSerializer(serializers.Serializer):
    user_id = serializers.IntegerField(help_text="Winning user id")
    draw_id = serializers.IntegerField(
        required=False,
        help_text="Draw to close (defaults to the open draw)"
    )


class TicketVerificationSerializer(serializers.Serializer):
    user_id = serializers.IntegerField(
        required=False,
        help_text="User to verify (administrators only)"
    )
    event_id = serializers.CharField(
        required=False,
        max_length=255,
        help_text="Completed survey transaction id for emergency issuance"
    )


class BonusClaimSerializer(serializers.Serializer):
    token = serializers.CharField(max_length=255, help_text="Token from the non-winner email")
