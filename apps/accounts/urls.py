from django.urls import path
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView
from .views import ApplyReferralCodeView, ReferralStatsView, UserProfileView

app_name = 'accounts'

urlpatterns = [
    path('token/', TokenObtainPairView.as_view(), name='token-obtain'),
    path('token/refresh/', TokenRefreshView.as_view(), name='token-refresh'),
    path('profile/', UserProfileView.as_view(), name='profile'),
    path('referrals/', ReferralStatsView.as_view(), name='referral-stats'),
    path('referrals/apply/', ApplyReferralCodeView.as_view(), name='apply-referral-code'),
]
