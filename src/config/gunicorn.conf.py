import os

wsgi_app = "src.wsgi:application"
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:5000")
workers = int(os.getenv("GUNICORN_WORKERS", "3"))
worker_class = "sync"
# Transitions are short; long requests mean a stuck database lock
timeout = 60
