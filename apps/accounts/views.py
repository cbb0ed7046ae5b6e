from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from drf_yasg.utils import swagger_auto_schema
from drf_yasg import openapi

from .serializers import (
    ApplyReferralCodeSerializer,
    ReferralStatsSerializer,
    UserProfileSerializer,
)
from .services import ReferralCodeService


class UserProfileView(APIView):
    """
    API endpoint for the authenticated user's profile and balances
    """
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_description="Get the current user's profile and ticket balances",
        responses={
            200: UserProfileSerializer,
            401: openapi.Response(description="Authentication required"),
        },
        security=[{'Bearer': []}],
        tags=['User']
    )
    def get(self, request):
        request.user.refresh_from_db()
        serializer = UserProfileSerializer(request.user)
        return Response(serializer.data, status=status.HTTP_200_OK)

    @swagger_auto_schema(
        operation_description="Update the current user's display name",
        request_body=UserProfileSerializer,
        responses={
            200: UserProfileSerializer,
            400: openapi.Response(description="Invalid data"),
        },
        security=[{'Bearer': []}],
        tags=['User']
    )
    def patch(self, request):
        serializer = UserProfileSerializer(request.user, data=request.data, partial=True)

        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        serializer.save()
        return Response(serializer.data, status=status.HTTP_200_OK)


class ReferralStatsView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_description="Referral code and referral statistics of the current user",
        responses={200: ReferralStatsSerializer},
        security=[{'Bearer': []}],
        tags=['Referrals']
    )
    def get(self, request):
        stats = ReferralCodeService.get_stats(request.user)
        return Response(ReferralStatsSerializer(stats).data, status=status.HTTP_200_OK)


class ApplyReferralCodeView(APIView):
    """
    Name the user who referred you. Allowed once, before the first survey.
    """
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_description="Apply a referral code to the current user",
        request_body=ApplyReferralCodeSerializer,
        responses={
            200: openapi.Response(description="Referral code applied"),
            400: openapi.Response(description="Invalid, self or repeated referral"),
        },
        security=[{'Bearer': []}],
        tags=['Referrals']
    )
    def post(self, request):
        serializer = ApplyReferralCodeSerializer(data=request.data)

        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            referrer = ReferralCodeService.apply_referral_code(
                request.user,
                serializer.validated_data['referral_code']
            )
        except ValueError as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

        return Response(
            {
                'message': 'Referral code applied',
                'referrer': referrer.name or referrer.email.split('@')[0],
            },
            status=status.HTTP_200_OK
        )
