import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"

# Worker processes; each worker opens its own pool (max 5 connections)
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = "sync"
timeout = 60  # SMTP and identity calls are the slow paths
max_requests = 1000
max_requests_jitter = 50

# Logging
accesslog = "-"
errorlog = "-"
loglevel = "info"

# Server mechanics
daemon = False
preload_app = False

# Multipart uploads spool here
worker_tmp_dir = "/dev/shm"

wsgi_app = "app:app"
