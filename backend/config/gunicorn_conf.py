# ==============================================================================
# GUNICORN CONFIGURATION (ASGI via uvicorn workers)
# gunicorn config.asgi:application -c config/gunicorn_conf.py
# ==============================================================================

import os
import multiprocessing

# ==============================================================================
# WORKERS
# ==============================================================================
# Every worker holds its own WebSocket connections; the Redis channel layer lets a
# publish from any worker (or Celery) reach them. Sockets are long lived, so we
# default to fewer workers than the usual (2 * CPU) + 1.
CPU_COUNT = multiprocessing.cpu_count()
workers = int(os.getenv("GUNICORN_WORKERS", CPU_COUNT + 1))
worker_class = "uvicorn.workers.UvicornWorker"

# ==============================================================================
# SOCKET
# ==============================================================================
port = int(os.getenv("PORT", 8000))
bind = [f"0.0.0.0:{port}"]

proc_name = "dispatch-api"

# ==============================================================================
# TIMEOUTS
# ==============================================================================
timeout = int(os.getenv("GUNICORN_TIMEOUT", 60))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", 30))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", 5))

# ==============================================================================
# LOGGING (stdout/stderr for containers)
# ==============================================================================
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
access_log_format = '%(h)s %(t)s "%(r)s" %(s)s %(b)s %(D)s "%({x-request-id}i)s"'

# ==============================================================================
# RECYCLING
# ==============================================================================
# A recycled worker drops its sockets; clients reconnect and resubscribe.
max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", 5000))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", 500))

# Trust X-Forwarded-* from the platform load balancer
forwarded_allow_ips = "*"

preload_app = True


def on_starting(server):
    server.log.info(f"Starting dispatch API with {workers} {worker_class} workers on port {port}")


def when_ready(server):
    server.log.info("Dispatch API ready")


def worker_exit(server, worker):
    server.log.info(f"Worker {worker.pid} exited; its WebSocket sessions are gone")
