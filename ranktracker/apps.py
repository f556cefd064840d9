import sys

from django.apps import AppConfig


class RanktrackerConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "ranktracker"
    verbose_name = "Keyword Rank Tracking"

    def ready(self):
        from .conf import get_config

        # Don't start the scheduler during management commands or tests
        skip_commands = {
            "migrate", "makemigrations", "collectstatic", "createsuperuser",
            "shell", "test", "check",
        }
        if any(cmd in sys.argv for cmd in skip_commands):
            return
        if not get_config()["AUTOSTART"]:
            return

        from .scheduler import start_scheduler

        start_scheduler()
