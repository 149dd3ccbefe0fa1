"""
Management command to charge camera-based trip segments from Firebase

Usage:
    python manage.py listen_sightings              # Start real-time listener
    python manage.py listen_sightings --sync-only  # Process open trips only
    python manage.py listen_sightings --limit 50   # Catch up on 50 open trips first
"""

import logging
import time
from django.core.management.base import BaseCommand
from apps.reconciler.reconciler import BackendReconciler

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Listen to Firebase vehicle_trips sightings and charge camera-based segments'

    def add_arguments(self, parser):
        parser.add_argument(
            '--sync-only',
            action='store_true',
            help='Only process existing open trips, do not start real-time listener'
        )
        parser.add_argument(
            '--limit',
            type=int,
            default=100,
            help='Number of open trips to catch up on (default: 100)'
        )

    def handle(self, *args, **options):
        sync_only = options['sync_only']
        limit = options['limit']

        self.stdout.write(self.style.SUCCESS('=' * 60))
        self.stdout.write(self.style.SUCCESS('  Vehicle Sighting Reconciler'))
        self.stdout.write(self.style.SUCCESS('=' * 60))

        reconciler = BackendReconciler()

        self.stdout.write(self.style.WARNING(f'\nProcessing open trips (limit: {limit})...'))
        processed, segments = reconciler.process_existing_trips(limit=limit)

        self.stdout.write(self.style.SUCCESS(f'✓ Processed: {processed} trips'))
        self.stdout.write(self.style.SUCCESS(f'✓ Segments: {segments} new checkpoints recorded'))

        if not sync_only:
            self.stdout.write(self.style.WARNING('\nStarting real-time listener...'))

            def on_segment(result):
                self.stdout.write(
                    self.style.SUCCESS(
                        f'✓ Trip {result.trip_id} at {result.checkpoint}: {result.outcome} '
                        f'({result.distance_meters:.0f}m, {result.amount})'
                    )
                )

            watch = reconciler.listen_and_process(callback=on_segment)

            self.stdout.write(self.style.SUCCESS('✓ Listener is active. Press Ctrl+C to stop.'))
            self.stdout.write(self.style.WARNING('\nMonitoring vehicle_trips collection...'))

            try:
                while True:
                    time.sleep(1)

            except KeyboardInterrupt:
                self.stdout.write(self.style.WARNING('\n\nStopping listener...'))
                watch.unsubscribe()
                self.stdout.write(self.style.SUCCESS('✓ Listener stopped successfully'))

        self.stdout.write(self.style.SUCCESS('\n' + '=' * 60))
