"""JSON log formatting with request context for the trust layer."""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from trustlayer.settings import settings

_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar("trustlayer_log_context", default={})

# Submitted post text never reaches the logs; matched by exact field name.
_SUBMISSION_FIELDS = frozenset({"content", "title", "body"})
_CREDENTIAL_MARKERS = ("token", "secret", "password", "authorization")

_MAX_TEXT = 256
_MAX_ITEMS = 20

_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def bind_context(**fields: str | None) -> Token:
	"""Attach request-scoped fields (request id, route, actor) to every log line."""
	current = dict(_CONTEXT.get())
	current.update({key: value for key, value in fields.items() if value})
	return _CONTEXT.set(current)


def reset_context(token: Token) -> None:
	_CONTEXT.reset(token)


def redact(key: str, value: Any) -> Any:
	lowered = key.lower()
	if lowered in _SUBMISSION_FIELDS or any(marker in lowered for marker in _CREDENTIAL_MARKERS):
		return "[redacted]"
	if isinstance(value, str) and len(value) > _MAX_TEXT:
		return f"{value[:_MAX_TEXT]}…"
	if isinstance(value, (list, tuple, set, frozenset)):
		items = list(value)
		# member and affected-did lists can be long
		if len(items) > _MAX_ITEMS:
			return items[:_MAX_ITEMS] + [f"+{len(items) - _MAX_ITEMS} more"]
		return items
	return value


class JSONLogFormatter(logging.Formatter):
	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(_CONTEXT.get())
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key in _RECORD_ATTRS or key in payload:
				continue
			payload[key] = redact(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Sample info records at the configured rate; warnings and errors always pass."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> None:
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root = logging.getLogger()
	root.handlers.clear()
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
