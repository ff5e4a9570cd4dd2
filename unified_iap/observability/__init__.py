"""Observability - structured logging."""

from unified_iap.observability.logging import get_logger, log_context, redact_token, setup_logging

__all__ = ["get_logger", "log_context", "redact_token", "setup_logging"]
