from django.apps import AppConfig


class ReconcilerConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.reconciler'
    verbose_name = 'Camera Reconciler'
