from django.core.management.base import BaseCommand
from apps.lottery.tasks import process_pending_tasks


class Command(BaseCommand):
    help = 'Run due side-effect tasks (emails, referral credits, notifications)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--limit',
            type=int,
            default=100,
            help='Maximum number of tasks to run',
        )

    def handle(self, *args, **options):
        results = process_pending_tasks(limit=options['limit'])
        self.stdout.write(
            self.style.SUCCESS(
                f"Done: {results['DONE']}, retrying: {results['PENDING']}, failed: {results['FAILED']}"
            )
        )
