from django.core.management.base import BaseCommand, CommandError
from apps.lottery.exceptions import LotteryError
from apps.lottery.models import Draw
from apps.lottery.services import DrawService


class Command(BaseCommand):
    help = 'Close due draws, or force-close the open draw'

    def add_arguments(self, parser):
        parser.add_argument(
            '--force',
            action='store_true',
            help='Close the open draw even if its close time has not passed',
        )
        parser.add_argument(
            '--winner',
            type=int,
            help='User id of a manually selected winner (implies --force)',
        )

    def handle(self, *args, **options):
        winner = options.get('winner')

        if not options.get('force') and winner is None:
            self.stdout.write('Closing due draws...')
            closed = DrawService.close_due_draws()
            if not closed:
                self.stdout.write(self.style.WARNING('No draw is due'))
            for draw in closed:
                self.report(draw)
            return

        draw = Draw.objects.filter(status=Draw.STATUS_OPEN).order_by('draw_date').first()
        if draw is None:
            raise CommandError('There is no open draw')

        self.stdout.write(f'Closing draw {draw.id} ({draw.total_tickets} tickets)...')
        try:
            draw = DrawService.close_draw(draw.id, winner_user_id=winner)
        except LotteryError as e:
            raise CommandError(e.detail)

        self.report(draw)

    def report(self, draw):
        if draw.status == Draw.STATUS_CANCELLED:
            self.stdout.write(self.style.WARNING(f'Draw {draw.id} cancelled: no participants'))
        else:
            self.stdout.write(
                self.style.SUCCESS(
                    f'Draw {draw.id} completed! Winner: {draw.winner}, tickets: {draw.total_tickets}'
                )
            )
