"""
Wallet Models - local durable state of the vehicle unit
Deferred charges live here until they can be applied to the Firebase wallet.
"""

from django.db import models


class PendingDeduction(models.Model):
    """
    Toll that could not be charged because the wallet would have dropped
    below the floor. At most one per user; later shortfalls are merged in.
    Each segment is paid under its own charge_id, amount is what is still owed.

    segments: list of {"charge_id", "trip_id", "zone_id", "zone_name", "amount",
    "distance_meters", "entry": {lat, lng}, "exit": {lat, lng}, "occurred_at"}
    """

    user_id = models.CharField(
        max_length=128,
        unique=True,
        db_index=True,
        help_text="Firebase UID of the wallet owner"
    )

    # Zone of the most recent merged segment
    zone_id = models.CharField(max_length=128, blank=True)
    zone_name = models.CharField(max_length=255, blank=True)

    amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    distance_meters = models.FloatField(default=0)

    entry_lat = models.FloatField(null=True, blank=True)
    entry_lng = models.FloatField(null=True, blank=True)
    exit_lat = models.FloatField(null=True, blank=True)
    exit_lng = models.FloatField(null=True, blank=True)

    segments = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'pending_deductions'
        verbose_name = 'Pending Deduction'
        verbose_name_plural = 'Pending Deductions'

    def __str__(self):
        return f"{self.user_id} owes {self.amount} ({len(self.segments)} segments)"


class OfflineTransaction(models.Model):
    """Charge queued while the unit was offline, replayed oldest first on reconnect."""

    charge_id = models.CharField(
        max_length=64,
        unique=True,
        db_index=True,
        help_text="Idempotency key, becomes the Firebase transaction document ID"
    )
    user_id = models.CharField(max_length=128, db_index=True)
    trip_id = models.CharField(max_length=64, blank=True)
    zone_id = models.CharField(max_length=128, blank=True)
    zone_name = models.CharField(max_length=255, blank=True)

    amount = models.DecimalField(max_digits=10, decimal_places=2)
    distance_meters = models.FloatField(default=0)
    distance_description = models.CharField(max_length=64, blank=True)
    calculation_method = models.CharField(max_length=16, default='DEVICE')
    toll_amount = models.FloatField(null=True, blank=True)

    entry_lat = models.FloatField(null=True, blank=True)
    entry_lng = models.FloatField(null=True, blank=True)
    exit_lat = models.FloatField(null=True, blank=True)
    exit_lng = models.FloatField(null=True, blank=True)

    occurred_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'offline_transactions'
        ordering = ['created_at', 'id']
        verbose_name = 'Offline Transaction'
        verbose_name_plural = 'Offline Transactions'

    def __str__(self):
        return f"{self.zone_name}: {self.amount} ({self.charge_id})"
