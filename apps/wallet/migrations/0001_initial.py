from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='OfflineTransaction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('charge_id', models.CharField(db_index=True, help_text='Idempotency key, becomes the Firebase transaction document ID', max_length=64, unique=True)),
                ('user_id', models.CharField(db_index=True, max_length=128)),
                ('trip_id', models.CharField(blank=True, max_length=64)),
                ('zone_id', models.CharField(blank=True, max_length=128)),
                ('zone_name', models.CharField(blank=True, max_length=255)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=10)),
                ('distance_meters', models.FloatField(default=0)),
                ('distance_description', models.CharField(blank=True, max_length=64)),
                ('calculation_method', models.CharField(default='DEVICE', max_length=16)),
                ('toll_amount', models.FloatField(blank=True, null=True)),
                ('entry_lat', models.FloatField(blank=True, null=True)),
                ('entry_lng', models.FloatField(blank=True, null=True)),
                ('exit_lat', models.FloatField(blank=True, null=True)),
                ('exit_lng', models.FloatField(blank=True, null=True)),
                ('occurred_at', models.DateTimeField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name': 'Offline Transaction',
                'verbose_name_plural': 'Offline Transactions',
                'db_table': 'offline_transactions',
                'ordering': ['created_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='PendingDeduction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('user_id', models.CharField(db_index=True, help_text='Firebase UID of the wallet owner', max_length=128, unique=True)),
                ('zone_id', models.CharField(blank=True, max_length=128)),
                ('zone_name', models.CharField(blank=True, max_length=255)),
                ('amount', models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ('distance_meters', models.FloatField(default=0)),
                ('entry_lat', models.FloatField(blank=True, null=True)),
                ('entry_lng', models.FloatField(blank=True, null=True)),
                ('exit_lat', models.FloatField(blank=True, null=True)),
                ('exit_lng', models.FloatField(blank=True, null=True)),
                ('segments', models.JSONField(blank=True, default=list)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Pending Deduction',
                'verbose_name_plural': 'Pending Deductions',
                'db_table': 'pending_deductions',
            },
        ),
    ]
