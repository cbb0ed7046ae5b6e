from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from apps.lottery.reconciliation import ReconciliationService

User = get_user_model()


class Command(BaseCommand):
    help = 'Audit (and optionally repair) ticket records against draw participation'

    def add_arguments(self, parser):
        parser.add_argument(
            '--user',
            type=int,
            help='Only check this user id (default: every user with tickets)',
        )
        parser.add_argument(
            '--repair',
            action='store_true',
            help='Repair discrepancies instead of only reporting them',
        )

    def handle(self, *args, **options):
        if options.get('user'):
            user_ids = [options['user']]
        else:
            user_ids = User.objects.filter(tickets__isnull=False).distinct().values_list('id', flat=True)

        checked = 0
        inconsistent = 0
        writes = 0

        for user_id in user_ids:
            checked += 1
            if options['repair']:
                summary = ReconciliationService.repair(user_id)
                if summary['writes']:
                    inconsistent += 1
                    writes += summary['writes']
                    for action in summary['actions']:
                        self.stdout.write(f'User {user_id}: {action}')
            else:
                report = ReconciliationService.audit(user_id)
                if report['has_discrepancy']:
                    inconsistent += 1
                    self.stdout.write(
                        self.style.WARNING(
                            f"User {user_id}: {len(report['mismatched'])} mismatched, "
                            f"{len(report['orphaned'])} orphaned, {len(report['missing'])} missing"
                        )
                    )

        if options['repair']:
            self.stdout.write(
                self.style.SUCCESS(f'Checked {checked} user(s), repaired {inconsistent} ({writes} writes)')
            )
        elif inconsistent:
            self.stdout.write(self.style.WARNING(f'Checked {checked} user(s), {inconsistent} inconsistent'))
        else:
            self.stdout.write(self.style.SUCCESS(f'Checked {checked} user(s), all consistent'))
