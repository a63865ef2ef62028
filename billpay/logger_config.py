import logging
import os
from contextvars import ContextVar
from logging.handlers import TimedRotatingFileHandler
import sys

LOG_DIR = os.environ.get("BILLPAY_LOG_DIR", os.path.join(os.path.dirname(os.path.dirname(__file__)), "logs"))
LOG_FILE = os.path.join(LOG_DIR, "billpay.log")

# set per request by RequestIDMiddleware; "-" outside a request
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

class RequestIDFilter(logging.Filter):
    """Stamp every record with the id of the request being served."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True

def setup_logging():
    """Configure application-wide logging with console + rotating file."""
    root = logging.getLogger()
    if root.handlers:
        # Avoid double configuration if reloaded
        return

    level = os.environ.get("BILLPAY_LOG_LEVEL", "INFO").upper()
    root.setLevel(getattr(logging, level, logging.INFO))

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] [%(name)s] [%(request_id)s] %(message)s")
    request_ids = RequestIDFilter()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    console.addFilter(request_ids)
    root.addHandler(console)

    os.makedirs(LOG_DIR, exist_ok=True)
    file_handler = TimedRotatingFileHandler(LOG_FILE, when="midnight", backupCount=7, encoding="utf-8")
    file_handler.setFormatter(fmt)
    file_handler.addFilter(request_ids)
    root.addHandler(file_handler)
