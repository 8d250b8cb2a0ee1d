from django.apps import AppConfig


class QsyncConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'Qsync'
    verbose_name = 'HIS Queue Sync'
