"""
Celery worker entry point.

This imports the Celery app and tasks from the API module, sets up error
tracking and builds the connector registry once for the process.
"""
import sys
import logging

# Add API directory to path so we can import tasks
sys.path.insert(0, '/api')

from core.config import settings  # noqa: E402
from core.logging import setup_logging  # noqa: E402
from services.connectors import get_default_registry  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking (production)
if settings.SENTRY_DSN:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.celery import CeleryIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
        from sentry_sdk.integrations.redis import RedisIntegration

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[
                CeleryIntegration(),
                SqlalchemyIntegration(),
                RedisIntegration(),
            ],
            # Don't send PII (profile property values)
            send_default_pii=False,
        )
        logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")
    except ImportError:
        logger.warning("sentry-sdk not installed, error tracking disabled")
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")

# Connectors register at startup; the registry is frozen afterwards
registry = get_default_registry()
logger.info(f"Worker ready with {len(registry.list_connections())} connections")

# This makes Celery discover tasks
celery_app.autodiscover_tasks(['tasks'])


# Health check task (kept for compatibility)
@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    from core.database import check_db_connection

    return {"status": "ok", "database": check_db_connection()}
