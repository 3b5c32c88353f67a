import logging

from .config.env import LOG_LEVEL
from .utils.logging_config import setup_logging

setup_logging(level=getattr(logging, LOG_LEVEL, logging.INFO))

from .memoire import create_app

app = create_app()

if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000, debug=True)
