from django.shortcuts import redirect
from django.contrib import messages
from django.contrib.admin.views.decorators import staff_member_required
from django.views.decorators.csrf import csrf_protect
from django.views.decorators.http import require_POST

from .exceptions import LotteryError
from .models import Draw
from .services import DrawService


@staff_member_required
@csrf_protect
@require_POST
def run_draw_manual(request):
    """
    Close the open draw now from the admin panel
    """
    draw = Draw.objects.filter(status=Draw.STATUS_OPEN).order_by('draw_date').first()

    if draw is None:
        messages.warning(request, 'There is no open draw')
        return redirect('admin:lottery_draw_changelist')

    try:
        draw = DrawService.close_draw(draw.id)
    except LotteryError as e:
        messages.error(request, f'Draw could not be closed: {e.detail}')
        return redirect('admin:lottery_draw_changelist')

    if draw.status == Draw.STATUS_CANCELLED:
        messages.warning(request, f'Draw {draw.id} cancelled: no participants')
    else:
        messages.success(
            request,
            f'Draw {draw.id} completed! Winner: {draw.winner}, tickets: {draw.total_tickets}'
        )

    return redirect('admin:lottery_draw_changelist')
