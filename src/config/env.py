from __future__ import annotations
import os
from dotenv import load_dotenv

# Load environment variables once
load_dotenv()

# Exposed settings
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SECRET_KEY = os.getenv("SECRET_KEY")
DATABASE_URL = os.getenv("DATABASE_URL")
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://127.0.0.1:6379/0')
# 'database' writes the inbox row directly, 'celery' hands it to a worker, 'null' only logs
NOTIFICATION_TRANSPORT = os.getenv("NOTIFICATION_TRANSPORT", "database").lower()
DEFAULT_PLAGIARISM_THRESHOLD = float(os.getenv("DEFAULT_PLAGIARISM_THRESHOLD", "20.0"))
VERSION_ALLOCATION_RETRIES = int(os.getenv("VERSION_ALLOCATION_RETRIES", "10"))


def validate() -> None:
    """Raise a RuntimeError if required environment variables are missing."""
    missing = [name for name, value in {
        'SECRET_KEY': SECRET_KEY,
    }.items() if not value]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
