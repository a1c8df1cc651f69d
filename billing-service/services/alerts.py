"""
Operator alerting via Sentry

When no DSN is configured the Sentry SDK is a no-op, so alerts still
reach the application log.
"""

from typing import Any, Dict, Optional
import logging

import sentry_sdk

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}


def _scope_kwargs(
    tags: Optional[Dict[str, str]],
    user_id: Optional[str],
    extra: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {}
    if tags:
        kwargs["tags"] = tags
    if user_id:
        kwargs["user"] = {"id": user_id}
    if extra:
        kwargs["extras"] = extra
    return kwargs


class AlertService:
    """Severity-tagged alerts for the operations team"""

    def capture_message(
        self,
        message: str,
        level: str = "warning",
        tags: Optional[Dict[str, str]] = None,
        user_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        logger.log(
            _LOG_LEVELS.get(level, logging.WARNING),
            f"ALERT [{level}] {message}",
            extra={"alert_tags": tags, "user_id": user_id},
        )
        try:
            sentry_sdk.capture_message(
                message, level=level, **_scope_kwargs(tags, user_id, extra)
            )
        except Exception as e:
            logger.error(f"Failed to send alert to Sentry: {e}")

    def capture_exception(
        self,
        error: BaseException,
        tags: Optional[Dict[str, str]] = None,
        user_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        logger.error(
            f"ALERT [exception] {type(error).__name__}: {error}",
            extra={"alert_tags": tags, "user_id": user_id},
        )
        try:
            sentry_sdk.capture_exception(error, **_scope_kwargs(tags, user_id, extra))
        except Exception as e:
            logger.error(f"Failed to send exception to Sentry: {e}")
