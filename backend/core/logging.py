"""
Centralized Logging Configuration

Provides standardized logging setup with JSON formatting for structured logs.
Used by both the API process and Celery workers.
"""
import os
import logging
import json
from datetime import datetime, timezone

# Extra attributes passed through logger.*(..., extra={...}) that end up in JSON logs
CONTEXT_FIELDS = ('lead_id', 'external_lead_id', 'organization_id', 'worker_id', 'duration_ms')


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, service_name=None):
        super().__init__()
        self.service_name = service_name

    def format(self, record):
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }
        if self.service_name:
            log_entry['service'] = self.service_name

        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        return json.dumps(log_entry, default=str)


def setup_logging(
    level=None,
    format_type='standard',
    log_file=None,
    service_name='lead-ingestion'
):
    """
    Setup centralized logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: 'json' for structured JSON logs, 'standard' for human-readable
        log_file: Optional file path for log output
        service_name: Service name to include in logs
    """
    if level is None:
        level = os.getenv('LOG_LEVEL', 'INFO').upper()

    numeric_level = getattr(logging, level, logging.INFO)

    environment = os.getenv('ENVIRONMENT', 'development').lower()
    use_json = (format_type == 'json' or
                environment == 'production' or
                os.getenv('USE_JSON_LOGGING', '').lower() == 'true')

    if use_json:
        formatter = JsonFormatter(service_name=service_name)
    else:
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Quiet noisy third-party libraries
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    return logging.getLogger(service_name)
