"""
Django management command to backfill center/geohash on toll zone documents
Usage: python manage.py index_zones
"""

from django.core.management.base import BaseCommand
from apps.geofencing.firebase_service import TollZoneFirebaseService


class Command(BaseCommand):
    help = 'Write center and geohash fields onto tollZones documents for proximity queries'

    def add_arguments(self, parser):
        parser.add_argument(
            '--zone-id',
            type=str,
            help='Index a specific zone by Firebase ID'
        )

    def handle(self, *args, **options):
        zone_service = TollZoneFirebaseService()

        zone_id = options.get('zone_id')

        if zone_id:
            self.stdout.write(f"Indexing zone: {zone_id}")
            success = zone_service.index_zone(zone_id)

            if success:
                self.stdout.write(self.style.SUCCESS(f'✓ Zone {zone_id} indexed successfully'))
            else:
                self.stdout.write(self.style.ERROR(f'✗ Failed to index zone {zone_id}'))
        else:
            self.stdout.write("Indexing all toll zones in Firebase...")
            stats = zone_service.index_all_zones()

            self.stdout.write(self.style.SUCCESS(f'\n✓ Indexing completed:'))
            self.stdout.write(f'  Total: {stats["total"]}')
            self.stdout.write(f'  Indexed: {stats["indexed"]}')
            self.stdout.write(f'  Failed: {stats["failed"]}')
