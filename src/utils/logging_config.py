import logging
import json
from typing import Optional, Dict, Any

_LOGGING_CONFIGURED = False
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


_DEFAULT_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())


class ContextFormatter(logging.Formatter):
    """Formatter that appends any custom LogRecord attributes as JSON context.

    Workflow modules log transitions with ``extra={"entity_id": ..., "from_status": ...}``;
    those fields are rendered after the message so an audit trail can be
    grepped from plain text logs.
    """

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context: Dict[str, Any] = {}
        for k, v in record.__dict__.items():
            if k in _DEFAULT_RECORD_KEYS:
                continue
            if k.startswith("_"):
                continue
            if k in {"exc_text", "stack_info", "message", "asctime"}:
                continue
            context[k] = v
        if context:
            try:
                ctx = json.dumps(context, ensure_ascii=False, default=str)
                return f"{base} | {ctx}"
            except (TypeError, ValueError):
                return f"{base} | context={context}"
        return base


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that ignores writes after the stream is closed.

    During test teardown the standard streams may be closed before
    atexit handlers run; records emitted then are dropped quietly.
    """

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - tiny wrapper
        stream = getattr(self, "stream", None)
        if not stream or getattr(stream, "closed", False):
            return
        try:
            super().emit(record)
        except ValueError:
            pass


def setup_logging(level: int = logging.INFO) -> None:
    """Configure root logger with a standard format once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    handler = SafeStreamHandler()
    handler.setFormatter(ContextFormatter(LOG_FORMAT))
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    _LOGGING_CONFIGURED = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger with the project's configuration."""
    if not _LOGGING_CONFIGURED:
        setup_logging()
    return logging.getLogger(name)


# ---- Workflow transitions ----

def _plain(value: Any) -> Any:
    return getattr(value, "value", value)


def transition_context(id_field: str, entity_id: Any, actor: Any, from_status: Any, to_status: Any,
                       **extra: Any) -> Dict[str, Any]:
    """Build the ``extra`` mapping logged for a status transition.

    Enum members are flattened to their values so the JSON context stays
    readable; ``from_status`` is None for creations.
    """
    context = {
        id_field: entity_id,
        "actor_id": getattr(actor, "id", actor),
        "from_status": _plain(from_status),
        "to_status": _plain(to_status),
    }
    context.update({k: _plain(v) for k, v in extra.items()})
    return context
