"""
Management command to replay charges queued while the unit was offline
Usage: python manage.py replay_offline [--user-id <uid>]
"""

from django.conf import settings
from django.core.management.base import BaseCommand
from apps.trips.connectivity import ConnectivityMonitor
from apps.trips.firebase_service import TripFirebaseService
from apps.wallet.firebase_service import WalletFirebaseService
from apps.wallet.ledger import TollLedger
from apps.wallet.models import OfflineTransaction
from config.tolling import TollingConfig


class Command(BaseCommand):
    help = 'Replay queued offline toll charges against the Firebase wallet'

    def add_arguments(self, parser):
        parser.add_argument(
            '--user-id',
            type=str,
            help='Replay only this wallet owner (default: every queued user)'
        )

    def handle(self, *args, **options):
        config = TollingConfig.from_settings()
        wallet_service = WalletFirebaseService()
        trip_store = TripFirebaseService(wallet_service.db)

        user_id = options.get('user_id')
        if user_id:
            user_ids = [user_id]
        else:
            user_ids = list(
                OfflineTransaction.objects.order_by().values_list('user_id', flat=True).distinct()
            ) or ([settings.VEHICLE_USER_ID] if settings.VEHICLE_USER_ID else [])

        if not user_ids:
            self.stdout.write(self.style.WARNING('Nothing queued.'))
            return

        total = 0
        for uid in user_ids:
            queued = OfflineTransaction.objects.filter(user_id=uid).count()
            self.stdout.write(f"Replaying {queued} queued charges for {uid}...")

            ledger = TollLedger(
                uid, wallet_service, ConnectivityMonitor(), floor=config.wallet_floor, trip_store=trip_store
            )
            settled = ledger.on_reconnect()
            total += settled

            if settled == queued:
                self.stdout.write(self.style.SUCCESS(f'✓ {uid}: {settled} settled'))
            else:
                self.stdout.write(self.style.ERROR(f'✗ {uid}: {settled} of {queued} settled, rest still queued'))

        self.stdout.write(self.style.SUCCESS(f'\n✓ Replay completed: {total} charges settled'))
