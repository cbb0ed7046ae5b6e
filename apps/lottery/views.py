import hmac
import logging

from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import AllowAny, IsAdminUser, IsAuthenticated
from drf_yasg.utils import swagger_auto_schema
from drf_yasg import openapi
from django.conf import settings

from .exceptions import LotteryError, NoOpenDrawError
from .models import Draw, DrawParticipation, Ticket
from .postback import PostbackService
from .reconciliation import ReconciliationService
from .serializers import (
    BonusClaimSerializer,
    DrawParticipationSerializer,
    DrawSerializer,
    ParticipateSerializer,
    SelectWinnerSerializer,
    TicketSerializer,
    TicketVerificationSerializer,
)
from .services import BonusService, DrawService, LedgerService

logger = logging.getLogger(__name__)


def error_response(exc):
    return Response({'error': exc.detail}, status=exc.status_code)


def client_ip(request):
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


POSTBACK_PARAMETERS = [
    openapi.Parameter('user_id', openapi.IN_QUERY, type=openapi.TYPE_STRING, required=True),
    openapi.Parameter('external_transaction_id', openapi.IN_QUERY, type=openapi.TYPE_STRING, description='Alias: trans_id'),
    openapi.Parameter('completion_status', openapi.IN_QUERY, type=openapi.TYPE_STRING, description='1 = completed. Alias: status'),
    openapi.Parameter('auth_hash', openapi.IN_QUERY, type=openapi.TYPE_STRING, description='md5("<user_id>-<key>"). Alias: hash'),
    openapi.Parameter('test_mode', openapi.IN_QUERY, type=openapi.TYPE_STRING, required=False),
]


class PostbackView(APIView):
    """
    Survey completion notification from the survey provider.

    Answers 200 for every settled outcome (credited, duplicate, not
    completed) so the provider does not retry them.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    @swagger_auto_schema(
        operation_description="Survey completion postback (query string)",
        manual_parameters=POSTBACK_PARAMETERS,
        responses={
            200: openapi.Response(description="Credited, duplicate or not completed"),
            400: openapi.Response(description="Missing or malformed parameters"),
            403: openapi.Response(description="Invalid hash"),
            404: openapi.Response(description="Unknown user"),
            500: openapi.Response(description="Not credited, retry"),
        },
        tags=['Postback']
    )
    def get(self, request):
        return self.handle(request, request.query_params)

    @swagger_auto_schema(
        operation_description="Survey completion postback (form or JSON body)",
        manual_parameters=POSTBACK_PARAMETERS,
        tags=['Postback']
    )
    def post(self, request):
        params = request.query_params.copy()
        if hasattr(request.data, 'items'):
            params.update(request.data)
        return self.handle(request, params)

    def handle(self, request, params):
        try:
            result = PostbackService.process(params, remote_addr=client_ip(request))
        except Exception:
            return Response(
                {'error': 'Internal error while processing postback'},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        body = {'outcome': result.outcome, 'message': result.message}
        body.update(result.data)
        return Response(body, status=result.status_code)


class CronCloseDrawsView(APIView):
    """
    Scheduled draw-close trigger, authenticated with a shared secret
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    @staticmethod
    def has_valid_secret(request):
        expected = settings.CRON_SECRET
        provided = request.headers.get('X-Cron-Secret') or request.query_params.get('secret') or ''
        if not expected:
            return False
        return hmac.compare_digest(str(provided), str(expected))

    @swagger_auto_schema(
        operation_description="Close every open draw whose close time has passed. Safe to call repeatedly.",
        manual_parameters=[
            openapi.Parameter('secret', openapi.IN_QUERY, type=openapi.TYPE_STRING, description='Shared cron secret (or X-Cron-Secret header)'),
        ],
        responses={
            200: openapi.Response(description="Draws closed (possibly none)"),
            403: openapi.Response(description="Invalid secret"),
        },
        tags=['Draws']
    )
    def post(self, request):
        if not self.has_valid_secret(request):
            return Response({'error': 'Invalid cron secret'}, status=status.HTTP_403_FORBIDDEN)

        try:
            closed = DrawService.close_due_draws()
        except LotteryError as e:
            return error_response(e)

        return Response(
            {
                'closed': [
                    {'draw_id': draw.id, 'status': draw.status, 'winner_id': draw.winner_id}
                    for draw in closed
                ],
                'count': len(closed),
            },
            status=status.HTTP_200_OK
        )

    def get(self, request):
        return self.post(request)


class AdminSelectWinnerView(APIView):
    """
    Close a draw with a winner chosen by an administrator
    """
    permission_classes = [IsAdminUser]

    @swagger_auto_schema(
        operation_description="Manually select the winner of a draw. The user must have tickets in the draw.",
        request_body=SelectWinnerSerializer,
        responses={
            200: openapi.Response(description="Draw completed", schema=DrawSerializer),
            400: openapi.Response(description="User has no tickets in the draw"),
            404: openapi.Response(description="No open draw"),
            409: openapi.Response(description="Draw already closed"),
        },
        security=[{'Bearer': []}],
        tags=['Admin']
    )
    def post(self, request):
        serializer = SelectWinnerSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        draw_id = serializer.validated_data.get('draw_id')
        try:
            if draw_id is None:
                draw = Draw.objects.filter(status=Draw.STATUS_OPEN).order_by('draw_date').first()
                if draw is None:
                    raise NoOpenDrawError()
                draw_id = draw.id
            elif not Draw.objects.filter(pk=draw_id).exists():
                raise NoOpenDrawError(f"Draw {draw_id} not found")

            draw = DrawService.close_draw(draw_id, winner_user_id=serializer.validated_data['user_id'])
        except LotteryError as e:
            return error_response(e)

        logger.info(f"Admin {request.user.pk} selected user {draw.winner_id} as winner of draw {draw.id}")
        return Response(
            {'message': 'Winner selected', 'draw': DrawSerializer(draw).data},
            status=status.HTTP_200_OK
        )


class TicketVerificationView(APIView):
    """
    Audit (GET) or repair (POST) a user's tickets against draw participation.
    Users see their own tickets; administrators may pass user_id.
    """
    permission_classes = [IsAuthenticated]

    @staticmethod
    def target_user_id(request, requested_id):
        if requested_id is None or requested_id == request.user.pk:
            return request.user.pk
        if not request.user.is_staff:
            return None
        return requested_id

    @swagger_auto_schema(
        operation_description="Read-only ticket audit",
        query_serializer=TicketVerificationSerializer,
        responses={200: openapi.Response(description="Audit report"), 403: openapi.Response(description="Not allowed")},
        security=[{'Bearer': []}],
        tags=['Tickets']
    )
    def get(self, request):
        serializer = TicketVerificationSerializer(data=request.query_params)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        user_id = self.target_user_id(request, serializer.validated_data.get('user_id'))
        if user_id is None:
            return Response({'error': 'Not allowed to verify another user'}, status=status.HTTP_403_FORBIDDEN)

        try:
            report = ReconciliationService.audit(user_id)
        except LotteryError as e:
            return error_response(e)

        return Response(report, status=status.HTTP_200_OK)

    @swagger_auto_schema(
        operation_description="Repair participation drift. With event_id, also issues an emergency ticket to a user holding none.",
        request_body=TicketVerificationSerializer,
        responses={200: openapi.Response(description="Repair summary"), 403: openapi.Response(description="Not allowed")},
        security=[{'Bearer': []}],
        tags=['Tickets']
    )
    def post(self, request):
        serializer = TicketVerificationSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        user_id = self.target_user_id(request, serializer.validated_data.get('user_id'))
        if user_id is None:
            return Response({'error': 'Not allowed to verify another user'}, status=status.HTTP_403_FORBIDDEN)

        event_id = serializer.validated_data.get('event_id')
        try:
            summary = ReconciliationService.repair(user_id)
            emergency_ticket_id = None
            if event_id:
                emergency_ticket_id = ReconciliationService.issue_emergency_ticket(user_id, event_id)
        except LotteryError as e:
            return error_response(e)

        summary['emergency_ticket_id'] = emergency_ticket_id
        return Response(summary, status=status.HTTP_200_OK)


class CurrentDrawView(APIView):
    """
    The open draw and the caller's standing in it
    """
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_description="Current open draw, created on first demand",
        responses={200: openapi.Response(description="Current draw")},
        security=[{'Bearer': []}],
        tags=['Draws']
    )
    def get(self, request):
        try:
            draw = DrawService.get_or_create_open_draw()
        except LotteryError as e:
            return error_response(e)

        request.user.refresh_from_db()
        participation = DrawParticipation.objects.filter(user=request.user, draw=draw).first()

        return Response(
            {
                'draw': DrawSerializer(draw).data,
                'participation': DrawParticipationSerializer(participation).data if participation else None,
                'available_tickets': request.user.available_tickets,
                'total_tickets_earned': request.user.total_tickets_earned,
            },
            status=status.HTTP_200_OK
        )


class ParticipateView(APIView):
    """
    Apply available tickets to the open draw
    """
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_description="Apply available tickets to the open draw",
        request_body=ParticipateSerializer,
        responses={
            200: openapi.Response(description="Tickets applied"),
            400: openapi.Response(description="Not enough available tickets"),
        },
        security=[{'Bearer': []}],
        tags=['Draws']
    )
    def post(self, request):
        serializer = ParticipateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            draw, applied = LedgerService.apply_requested(
                request.user.pk,
                serializer.validated_data.get('tickets'),
            )
        except LotteryError as e:
            return error_response(e)

        return Response(
            {
                'message': f'{applied} ticket(s) applied to the current draw',
                'tickets_applied': applied,
                'draw': DrawSerializer(draw).data,
            },
            status=status.HTTP_200_OK
        )


class UserTicketsHistoryView(APIView):
    """
    The caller's ticket records, newest first
    """
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_description="List the caller's tickets",
        responses={200: openapi.Response(description="Ticket list")},
        security=[{'Bearer': []}],
        tags=['Tickets']
    )
    def get(self, request):
        tickets = Ticket.objects.filter(user=request.user).order_by('-created_at', '-id')
        serializer = TicketSerializer(tickets, many=True)

        return Response(
            {
                'count': tickets.count(),
                'results': serializer.data
            },
            status=status.HTTP_200_OK
        )


class RecentWinnersView(APIView):
    permission_classes = [AllowAny]

    @swagger_auto_schema(
        operation_description="Most recent completed draws and their winners",
        responses={200: openapi.Response(description="Winners")},
        tags=['Draws']
    )
    def get(self, request):
        draws = Draw.objects.filter(status=Draw.STATUS_COMPLETED).select_related('winner').order_by('-completed_at')[:10]
        serializer = DrawSerializer(draws, many=True)
        return Response({'count': len(serializer.data), 'winners': serializer.data}, status=status.HTTP_200_OK)


class SocialFollowView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_description="Claim the one-time social follow ticket. Requires a completed survey.",
        responses={
            200: openapi.Response(description="Ticket awarded"),
            400: openapi.Response(description="Already claimed or no survey yet"),
        },
        security=[{'Bearer': []}],
        tags=['Tickets']
    )
    def post(self, request):
        try:
            ticket_ids, applied = BonusService.award_social_follow(request.user)
        except LotteryError as e:
            return error_response(e)

        return Response(
            {'message': 'Social follow ticket awarded', 'ticket_ids': ticket_ids, 'available_tickets': applied},
            status=status.HTTP_200_OK
        )


class NonWinnerBonusView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_description="Redeem the bonus tickets offered to non-winners",
        request_body=BonusClaimSerializer,
        responses={
            200: openapi.Response(description="Bonus tickets awarded"),
            400: openapi.Response(description="Invalid or already claimed"),
            403: openapi.Response(description="Token belongs to another user"),
            404: openapi.Response(description="Unknown token"),
        },
        security=[{'Bearer': []}],
        tags=['Tickets']
    )
    def post(self, request):
        serializer = BonusClaimSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            ticket_ids, applied = BonusService.claim_non_winner_bonus(
                request.user,
                serializer.validated_data['token'],
            )
        except LotteryError as e:
            return error_response(e)

        return Response(
            {'message': 'Bonus tickets awarded', 'ticket_ids': ticket_ids, 'available_tickets': applied},
            status=status.HTTP_200_OK
        )
