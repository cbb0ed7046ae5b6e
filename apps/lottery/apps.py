from django.apps import AppConfig
import logging

logger = logging.getLogger(__name__)


class LotteryConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.lottery'
    verbose_name = 'Lottery'

    def ready(self):
        """
        Start scheduler when app is ready
        Only when explicitly enabled
        """
        from django.conf import settings

        if settings.ENABLE_DRAW_SCHEDULER:
            try:
                from .scheduler import start_scheduler
                start_scheduler()
            except Exception as e:
                # Log error but don't fail app startup
                logger.error(f"Failed to start draw scheduler: {str(e)}")
