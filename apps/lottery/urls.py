from django.urls import path
from .views import (
    AdminSelectWinnerView,
    CronCloseDrawsView,
    CurrentDrawView,
    NonWinnerBonusView,
    ParticipateView,
    PostbackView,
    RecentWinnersView,
    SocialFollowView,
    TicketVerificationView,
    UserTicketsHistoryView,
)
from .admin_views import run_draw_manual

app_name = 'lottery'

urlpatterns = [
    path('postback/', PostbackView.as_view(), name='postback'),
    path('cron/close-draws/', CronCloseDrawsView.as_view(), name='cron-close-draws'),
    path('admin/select-winner/', AdminSelectWinnerView.as_view(), name='admin-select-winner'),
    path('admin/run-draw/', run_draw_manual, name='run-draw-manual'),
    path('tickets/verify/', TicketVerificationView.as_view(), name='ticket-verification'),
    path('participate/', ParticipateView.as_view(), name='participate'),
    path('current-draw/', CurrentDrawView.as_view(), name='current-draw'),
    path('my-tickets/', UserTicketsHistoryView.as_view(), name='user-tickets-history'),
    path('recent-winners/', RecentWinnersView.as_view(), name='recent-winners'),
    path('social-follow/', SocialFollowView.as_view(), name='social-follow'),
    path('non-winner-bonus/', NonWinnerBonusView.as_view(), name='non-winner-bonus'),
]
