import json
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone

from paywall_engine.core.config import Settings

SERVICE_NAME = "paywall-engine"

# Per-request chatter from client libraries; decisions are logged by the engine itself.
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    """One JSON object per line: event name in "message", decision fields from extra."""

    EXTRA_FIELDS = (
        "user_id", "session_id", "event_id", "action_type", "show",
        "context", "variant", "engagement_level", "trial_status",
        "offer_expires_at", "attempt", "max_attempts", "delay_seconds",
        "failed_count", "reason", "error", "path", "status_code",
        "latency_ms", "breaker_name", "old_state", "new_state",
    )

    def __init__(self, env: str | None = None) -> None:
        super().__init__()
        self.env = env

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.env:
            payload["env"] = self.env

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # datetimes and enums in extra
        return json.dumps(payload, ensure_ascii=False, default=str)


def _formatter(settings: Settings) -> logging.Formatter:
    if settings.log_format == "text":
        return logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    return JsonFormatter(env=settings.app_env)


def configure_logging(settings: Settings) -> None:
    formatter = _formatter(settings)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    handlers: list[logging.Handler] = [console]
    if settings.log_file:
        rotating = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
        )
        rotating.setFormatter(formatter)
        handlers.append(rotating)

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level, logging.INFO))
    root.handlers = handlers
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
