"""
Links App Configuration
"""
from django.apps import AppConfig


class LinksConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'links'
    verbose_name = 'Links'

    def ready(self):
        # Import signals when app is ready
        import links.signals  # noqa
