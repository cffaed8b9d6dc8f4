import sys
import structlog
import logging

from costpulse.core.config import Settings


def secret_redactor(logger, method_name, event_dict):
    """
    Redact secrets and recipient addresses from logs.
    Keeps API keys and mail recipients out of the automation job output.
    """
    sensitive_fields = {
        "api_key", "token", "secret", "password", "client_secret",
        "authorization", "recipients", "email",
    }

    for field in sensitive_fields:
        if field in event_dict:
            event_dict[field] = "[REDACTED]"

    for container in ["metadata", "payload", "details", "extra"]:
        if container in event_dict and isinstance(event_dict[container], dict):
            for field in sensitive_fields:
                if field in event_dict[container]:
                    event_dict[container][field] = "[REDACTED]"

    return event_dict


def setup_logging(settings: Settings):
    # 1. Choose the renderer based on environment
    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    # 2. Processor pipeline
    processors = [
        structlog.contextvars.merge_contextvars,     # run_id / job bound per run
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        secret_redactor,                             # Redact before rendering
        renderer
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route library logs (azure, httpx, apscheduler) to stdout as well.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )
    # The Azure SDK logs every HTTP request at INFO.
    logging.getLogger("azure").setLevel(logging.WARNING)


def bind_run_context(job: str, run_id: str, **extra):
    """Bind job identity to every log line emitted during the run."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(job=job, run_id=run_id, **extra)
