from django.contrib import admin
from django.contrib import messages
from django.urls import reverse
from .exceptions import LotteryError
from .models import Draw, DrawParticipation, PostbackAudit, ProcessedEvent, Setting, SideEffectTask, Ticket
from .services import DrawService
from django.utils import timezone


@admin.action(description='Close selected open draws now')
def close_draws_action(modeladmin, request, queryset):
    """
    Admin action to close draws with weighted winner selection
    """
    completed = 0
    cancelled = 0

    for draw in queryset.filter(status=Draw.STATUS_OPEN):
        try:
            draw = DrawService.close_draw(draw.id)
        except LotteryError as e:
            modeladmin.message_user(
                request,
                f'Draw {draw.id} could not be closed: {e.detail}',
                level=messages.ERROR
            )
            continue

        if draw.status == Draw.STATUS_COMPLETED:
            completed += 1
        else:
            cancelled += 1

    modeladmin.message_user(
        request,
        f'Draws completed: {completed}, cancelled (no participants): {cancelled}',
        level=messages.SUCCESS
    )


@admin.register(Draw)
class DrawAdmin(admin.ModelAdmin):
    list_display = ('id', 'draw_date', 'status', 'prize_amount', 'total_tickets', 'winner', 'completed_at')
    list_filter = ('status', 'draw_date')
    search_fields = ('winner__email',)
    readonly_fields = ('total_tickets', 'winner', 'completed_at', 'created_at', 'updated_at')
    ordering = ('-draw_date',)
    actions = [close_draws_action]

    def changelist_view(self, request, extra_context=None):
        """
        Add custom button to close the open draw
        """
        extra_context = extra_context or {}
        extra_context['run_draw_url'] = reverse('lottery:run-draw-manual')
        return super().changelist_view(request, extra_context=extra_context)


@admin.register(Ticket)
class TicketAdmin(admin.ModelAdmin):
    list_display = ('confirmation_code', 'user', 'source', 'is_used', 'draw', 'created_at')
    list_filter = ('source', 'is_used', 'created_at')
    search_fields = ('confirmation_code', 'user__email')
    readonly_fields = ('user', 'source', 'confirmation_code', 'is_used', 'draw', 'created_at', 'updated_at')
    ordering = ('-created_at',)

    def has_add_permission(self, request):
        # Tickets are only created through the ledger
        return False


@admin.register(DrawParticipation)
class DrawParticipationAdmin(admin.ModelAdmin):
    list_display = ('user', 'draw', 'tickets_used', 'is_winner', 'updated_at')
    list_filter = ('is_winner', 'draw')
    search_fields = ('user__email',)
    readonly_fields = ('user', 'draw', 'tickets_used', 'is_winner', 'created_at', 'updated_at')


@admin.register(ProcessedEvent)
class ProcessedEventAdmin(admin.ModelAdmin):
    list_display = ('event_id', 'user', 'outcome', 'created_at')
    search_fields = ('event_id', 'user__email')
    readonly_fields = ('event_id', 'user', 'outcome', 'detail', 'created_at')


@admin.register(PostbackAudit)
class PostbackAuditAdmin(admin.ModelAdmin):
    list_display = ('transaction_id', 'raw_user_id', 'completion_status', 'outcome', 'test_mode', 'remote_addr', 'created_at')
    list_filter = ('outcome', 'test_mode', 'created_at')
    search_fields = ('transaction_id', 'raw_user_id', 'user__email')
    readonly_fields = [f.name for f in PostbackAudit._meta.fields]


@admin.register(Setting)
class SettingAdmin(admin.ModelAdmin):
    list_display = ('key', 'value', 'description', 'updated_at')
    search_fields = ('key', 'description')


@admin.action(description='Retry selected tasks')
def retry_tasks_action(modeladmin, request, queryset):
    count = queryset.exclude(status=SideEffectTask.STATUS_DONE).update(
        status=SideEffectTask.STATUS_PENDING,
        attempts=0,
        next_attempt_at=timezone.now(),
    )
    modeladmin.message_user(request, f'{count} task(s) queued for retry', level=messages.SUCCESS)


@admin.register(SideEffectTask)
class SideEffectTaskAdmin(admin.ModelAdmin):
    list_display = ('id', 'kind', 'status', 'attempts', 'max_attempts', 'next_attempt_at', 'dedupe_key', 'created_at')
    list_filter = ('kind', 'status')
    search_fields = ('dedupe_key', 'last_error')
    readonly_fields = ('completed_at', 'created_at', 'updated_at')
    ordering = ('-created_at',)
    actions = [retry_tasks_action]
