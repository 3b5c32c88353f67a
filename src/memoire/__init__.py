"""Application factory for the thesis workflow service."""
import os

from flask import Flask, jsonify
from flask_migrate import Migrate
from werkzeug.middleware.proxy_fix import ProxyFix

from . import models
from .routes.api import api_bp
from .workflow.notifications import EXTENSION_KEY, NotificationDispatcher, build_transport

from ..extensions import db, login_manager
from ..celery_app import init_celery
from ..config.env import (
    SECRET_KEY,
    DATABASE_URL,
    CELERY_BROKER_URL,
    CELERY_RESULT_BACKEND,
    NOTIFICATION_TRANSPORT,
    validate,
)
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class TestConfig:
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = 'test_key'
    NOTIFICATION_TRANSPORT = 'database'


def create_app(testing=False, config_overrides=None):
    if not testing:
        validate()
    app = Flask(__name__)

    # Respect reverse proxy headers for scheme, host and path prefix
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1, x_prefix=1)

    if testing:
        app.config.from_object(TestConfig)
    else:
        BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
        DB_DIR = os.path.join(BASE_DIR, "database")
        os.makedirs(DB_DIR, exist_ok=True)
        DB_PATH = os.path.join(DB_DIR, "memoire.db")
        app.config.update(
            SQLALCHEMY_DATABASE_URI=DATABASE_URL or f"sqlite:///{DB_PATH}?timeout=30",
            SQLALCHEMY_TRACK_MODIFICATIONS=False,
            SECRET_KEY=SECRET_KEY,
            SESSION_COOKIE_HTTPONLY=True,
            SESSION_COOKIE_SAMESITE='Lax',
            CELERY_BROKER_URL=CELERY_BROKER_URL,
            CELERY_RESULT_BACKEND=CELERY_RESULT_BACKEND,
            NOTIFICATION_TRANSPORT=NOTIFICATION_TRANSPORT,
        )
    if config_overrides:
        app.config.update(config_overrides)

    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        try:
            return db.session.get(models.User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify(error='unauthenticated', message="Authentication required"), 401

    db.init_app(app)

    if not testing:
        Migrate(app, db, directory=os.path.join(os.path.dirname(os.path.dirname(__file__)), 'migrations'))

    init_celery(app)

    transport = build_transport(app.config['NOTIFICATION_TRANSPORT'])
    app.extensions[EXTENSION_KEY] = NotificationDispatcher(transport)
    logger.info("Notification transport configured", extra={"transport": transport.name})

    app.register_blueprint(api_bp)

    return app
