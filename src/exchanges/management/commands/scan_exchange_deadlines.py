"""
Management command to run the exchange deadline scan once.
"""

from datetime import date

from django.core.management.base import BaseCommand, CommandError

from exchanges.services.deadline_scheduler import DeadlineScheduler


class Command(BaseCommand):
    help = 'Recompute exchange compliance and send due deadline reminders'

    def add_arguments(self, parser):
        parser.add_argument(
            '--date',
            help='Scan as of this date (YYYY-MM-DD) instead of today',
        )

    def handle(self, *args, **options):
        today = None
        if options.get('date'):
            try:
                today = date.fromisoformat(options['date'])
            except ValueError:
                raise CommandError(f"Invalid date: {options['date']}")

        summary = DeadlineScheduler().tick(today=today)

        self.stdout.write(f"Scanned {summary['scanned']} exchanges")
        self.stdout.write(f"  Compliance updated: {summary['compliance_updated']}")
        self.stdout.write(f"  Reminders sent: {summary['reminders_sent']}")
        self.stdout.write(f"  Overdue notices sent: {summary['overdue_sent']}")
        self.stdout.write(f"  Timers retired: {summary['timers_retired']}")
        if summary['conflicts']:
            self.stdout.write(self.style.WARNING(
                f"  Skipped {summary['conflicts']} exchanges changed during the scan"
            ))
        self.stdout.write(self.style.SUCCESS('Deadline scan complete'))
