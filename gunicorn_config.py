wsgi_app = "teradata_xport.app:create_app()"

bind = "0.0.0.0:4000"
workers = 1  # !!!KEEP THIS AS 1: each worker holds its own metric values
threads = 4  # Concurrent /metrics requests per worker
worker_class = "gthread"

loglevel = "info"
accesslog = "-"  # Log to stdout
errorlog = "-"   # Log to stderr

# Timeout settings for client disconnects and stuck requests
timeout = 45      # Worker timeout - should be > max scrape_timeout
keepalive = 2     # Keep-alive for HTTP connections
graceful_timeout = 30  # Graceful shutdown timeout

preload_app = False

# Enable proper signal handling for Docker
enable_stdio_inheritance = True

disable_redirect_access_to_syslog = True


### For TLS support, uncomment and set certfile and keyfile paths below.
### As well as change bind to use :4443.
# certfile = "/certs/server.crt"
# keyfile = "/certs/server.key"


def worker_timeout(worker):
    """Called when a worker times out (client disconnect or stuck request)."""
    import logging
    logging.warning(f"Worker {worker.pid} timed out - likely client disconnect or stuck query")


def worker_exit(server, worker):
    """Called when a worker is exiting."""
    import logging
    logging.info(f"Worker {worker.pid} exiting")
