"""observability/ — structured logging for the engine."""

from compliance_scheduler.observability.logger import (
    bind_run_context,
    clear_run_context,
    get_logger,
    setup_logging,
)

__all__ = ["bind_run_context", "clear_run_context", "get_logger", "setup_logging"]
