from django.contrib import admin
from django.contrib import messages
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User


@admin.action(description='Reset available tickets')
def reset_available_tickets_action(modeladmin, request, queryset):
    """
    Zero the available balance of the selected users through the ledger
    """
    from apps.lottery.services import LedgerService

    total = 0
    for user in queryset.filter(available_tickets__gt=0):
        total += LedgerService.reset_one(user.pk)

    modeladmin.message_user(
        request,
        f'Reset {total} available ticket(s)',
        level=messages.SUCCESS
    )


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ('email', 'name', 'available_tickets', 'total_tickets_earned', 'has_won', 'is_blocked', 'created_at')
    list_filter = ('has_won', 'is_blocked', 'is_staff', 'created_at')
    search_fields = ('email', 'name', 'referral_code')
    ordering = ('-created_at',)
    actions = [reset_available_tickets_action]

    fieldsets = (
        (None, {'fields': ('email', 'name', 'password')}),
        ('Tickets', {'fields': ('available_tickets', 'total_tickets_earned', 'has_won', 'last_win_date', 'social_media_followed')}),
        ('Referral', {'fields': ('referral_code', 'referred_by')}),
        ('Permissions', {'fields': ('is_active', 'is_blocked', 'is_staff', 'is_superuser', 'groups', 'user_permissions')}),
        ('Important dates', {'fields': ('last_login', 'date_joined', 'created_at', 'updated_at')}),
    )

    add_fieldsets = (
        (None, {
            'classes': ('wide',),
            'fields': ('email', 'password1', 'password2'),
        }),
    )

    readonly_fields = (
        'available_tickets',
        'total_tickets_earned',
        'has_won',
        'last_win_date',
        'referral_code',
        'created_at',
        'updated_at',
        'date_joined',
        'last_login',
    )
    raw_id_fields = ('referred_by',)
