import multiprocessing
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
workers = int(os.getenv("GUNICORN_WORKERS", multiprocessing.cpu_count() * 2 + 1))
worker_class = "sync"
timeout = int(os.getenv("GUNICORN_TIMEOUT", "30"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = 2
max_requests = 1000
max_requests_jitter = 50

# The draw scheduler (ENABLE_DRAW_SCHEDULER) starts in AppConfig.ready.
# Preloading runs that once in the master instead of once per worker.
preload_app = True
wsgi_app = "core.wsgi:application"

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
# Postbacks carry the auth hash in the query string
access_log_format = '%(h)s "%(m)s %(U)s" %(s)s %(b)s %(L)ss'

# Process naming
proc_name = "ticket_lottery"


def post_fork(server, worker):
    # Connections opened by the master during preload must not be shared
    from django.db import connections
    connections.close_all()


def when_ready(server):
    from django.conf import settings
    state = "running in master" if settings.ENABLE_DRAW_SCHEDULER else "disabled"
    server.log.info(f"Ticket lottery ready, draw scheduler {state}")
