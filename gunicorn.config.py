import os

wsgi_app = "app:create_app()"

# The daily scheduler runs as its own process (`flask settlement scheduler`),
# never inside web workers
raw_env = ["SETTLEMENT_SCHEDULER_ENABLED=false"]

worker_class = "gevent"
workers = int(os.getenv("WEB_CONCURRENCY", "4"))
worker_connections = 1000
# Manual settlement runs are synchronous requests
timeout = int(os.getenv("GUNICORN_TIMEOUT", "300"))
bind = "0.0.0.0:{}".format(os.getenv("PORT", "10000"))

loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
accesslog = "-"
errorlog = "-"
