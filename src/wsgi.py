"""WSGI entrypoint for running the workflow service with Gunicorn."""

import logging

from .config.env import LOG_LEVEL
from .utils.logging_config import setup_logging

setup_logging(level=getattr(logging, LOG_LEVEL, logging.INFO))

from .memoire import create_app

application = create_app()
app = application  # exposer 'app' et 'application' est OK

if __name__ == "__main__":
    application.run()
