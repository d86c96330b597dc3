"""
Gunicorn Configuration

Production settings for the ledger sync service.

One worker only: each worker would run its own subscriber and
reconciliation loop against the same store.
"""
import os

# Server socket
bind = f"{os.environ.get('HOST', '0.0.0.0')}:{os.environ.get('PORT', '3000')}"
backlog = 64

# Worker processes
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 120
graceful_timeout = 10
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()

# Process naming
proc_name = "ledger-sync"

# Server mechanics
daemon = False
pidfile = "/tmp/gunicorn.pid"

wsgi_app = "ledger_sync.main:app"
