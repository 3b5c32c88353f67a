import logging
import os

from src.utils.logging_config import setup_logging, get_logger

setup_logging(level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO")))
logger = get_logger(__name__)

from celery import Celery
from src.config.env import CELERY_BROKER_URL, CELERY_RESULT_BACKEND
# PAS d'import de create_app ici au niveau module


def make_celery_instance():
    """Crée et configure une instance Celery de base."""
    celery_instance = Celery(
        'memoire',
        broker=CELERY_BROKER_URL,
        backend=CELERY_RESULT_BACKEND,
        # Le nom de tâche effectif est figé via le décorateur `name=...`.
        include=['src.memoire.tasks'],
    )

    celery_instance.conf.update(
        task_serializer='json',
        result_serializer='json',
        accept_content=['json'],
        enable_utc=True,
        broker_connection_retry_on_startup=True,
        # Notifications are fire-and-forget
        task_ignore_result=True,
        task_acks_late=True,
        task_default_queue='celery',
    )

    class ContextTask(celery_instance.Task):
        abstract = True
        _flask_app = None

        def __call__(self, *args, **kwargs):
            if self._flask_app is None:
                logger.info("Création du contexte Flask pour la tâche Celery...")
                from src.memoire import create_app
                ContextTask._flask_app = create_app()

            with self._flask_app.app_context():
                try:
                    return super().__call__(*args, **kwargs)
                except Exception as task_exc:
                    logger.error(f"Erreur non capturée dans l'exécution de la tâche {self.name}: {task_exc}",
                                 exc_info=True)
                    raise

    celery_instance.Task = ContextTask
    return celery_instance


# Ceci n'appelle PAS create_app()
celery = make_celery_instance()


def init_celery(app):
    """Met à jour la configuration Celery avec celle de l'app Flask."""
    celery.conf.broker_url = app.config.get('CELERY_BROKER_URL', celery.conf.broker_url)
    celery.conf.result_backend = app.config.get('CELERY_RESULT_BACKEND', celery.conf.result_backend)
    celery.conf.update(app.config.get('CELERY', {}))
    # Les tâches exécutées dans ce processus réutilisent l'app déjà créée
    celery.Task._flask_app = app
    logger.info("Configuration Celery mise à jour depuis l'app Flask.")
    return celery
