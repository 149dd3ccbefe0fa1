from django.apps import AppConfig


class GeofencingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.geofencing'
    verbose_name = 'Toll Zones'
