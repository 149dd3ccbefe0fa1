"""
Management command to run the in-vehicle tolling session

Usage:
    python manage.py track_vehicle                    # Track VEHICLE_USER_ID
    python manage.py track_vehicle --user-id <uid>    # Track another wallet owner
"""

import logging
import time
from django.core.management.base import BaseCommand, CommandError
from apps.trips.session import build_session

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Track the vehicle position over MQTT and charge toll zone traversals'

    def add_arguments(self, parser):
        parser.add_argument(
            '--user-id',
            type=str,
            help='Firebase UID of the wallet owner (default: VEHICLE_USER_ID)'
        )

    def handle(self, *args, **options):
        self.stdout.write(self.style.SUCCESS('=' * 60))
        self.stdout.write(self.style.SUCCESS('  Vehicle Toll Tracker'))
        self.stdout.write(self.style.SUCCESS('=' * 60))

        try:
            session = build_session(user_id=options.get('user_id'))
        except ValueError as e:
            raise CommandError(str(e))

        if not session.start():
            raise CommandError('Location permission refused, cannot start tracking')

        self.stdout.write(self.style.SUCCESS(f'✓ Tracking {session.user_id}. Press Ctrl+C to stop.'))

        try:
            while True:
                time.sleep(1)
                session.tick()

        except KeyboardInterrupt:
            self.stdout.write(self.style.WARNING('\n\nStopping tracker...'))
            session.stop()
            self.stdout.write(self.style.SUCCESS('✓ Tracker stopped successfully'))

        self.stdout.write(self.style.SUCCESS('\n' + '=' * 60))
