"""
Production logging utility for structured JSON logging.

Provides event-specific logging functions with mandatory fields:
- timestamp (ISO8601)
- level
- service
- event

Optional fields (included when applicable):
- job_id
- user_id
- stage
- duration_ms

Usage:
    from imagepipe.utils.logging import configure_logging, log_job_created

    configure_logging('imagepipe-api', 'INFO')
    log_job_created(logger, job_id='123', user_id='456', duration_ms=45.2)
"""
import logging
import sys
from typing import Optional, Dict, Any
from pythonjsonlogger import jsonlogger


class StructuredLogger:
    """Structured JSON logger with mandatory fields."""

    _service_name = None
    _configured = False

    @classmethod
    def configure(cls, service_name: str, log_level: str = "INFO"):
        """
        Configure structured JSON logging for the application.

        Args:
            service_name: Service identifier (imagepipe-api or imagepipe-worker)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        """
        if cls._configured:
            return  # Already configured

        cls._service_name = service_name

        # Remove default handlers
        root_logger = logging.getLogger()
        root_logger.handlers = []

        formatter = jsonlogger.JsonFormatter(
            '%(timestamp)s %(levelname)s %(name)s %(message)s',
            timestamp=True,
            json_ensure_ascii=False
        )

        # Console handler (for docker logs)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)

        root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Add service name to all log records via filter
        class ServiceFilter(logging.Filter):
            def filter(self, record):
                record.service = cls._service_name
                return True

        handler.addFilter(ServiceFilter())
        cls._configured = True


def _build_log_extra(
    event: str,
    job_id: Optional[str] = None,
    user_id: Optional[str] = None,
    stage: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Build extra fields for structured logging.

    Args:
        event: Event name (mandatory)
        job_id: Optional job ID
        user_id: Optional user ID
        stage: Optional stage name (image or ai)
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields

    Returns:
        Dictionary of extra fields
    """
    extra = {
        "event": event,
        **kwargs
    }

    if job_id:
        extra["job_id"] = job_id
    if user_id:
        extra["user_id"] = user_id
    if stage:
        extra["stage"] = stage
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)

    return extra


# Job lifecycle events (API side)

def log_job_created(
    logger: logging.Logger,
    job_id: str,
    user_id: str,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """Log job creation (row committed, stage-1 message published)."""
    extra = _build_log_extra(
        event="job_created",
        job_id=job_id,
        user_id=user_id,
        duration_ms=duration_ms,
        **kwargs
    )
    logger.info(f"Job created: {job_id}", extra=extra)


def log_publish_failure(
    logger: logging.Logger,
    job_id: str,
    user_id: str,
    queue: str,
    error: str,
    **kwargs
):
    """
    Log a publish that failed after the job row was committed.

    The job is left durably in the store with no message in flight; it
    needs operator intervention (see requeue_jobs.py).
    """
    extra = _build_log_extra(
        event="publish_failure_post_commit",
        job_id=job_id,
        user_id=user_id,
        queue=queue,
        error=str(error),
        **kwargs
    )
    logger.error(
        f"Publish failure post-commit: job {job_id} stored but no message on {queue} - {error}",
        extra=extra,
        exc_info=sys.exc_info()[0] is not None
    )


# Stage events (worker side)

def log_stage_started(
    logger: logging.Logger,
    job_id: str,
    user_id: str,
    stage: str,
    **kwargs
):
    extra = _build_log_extra(
        event="stage_started",
        job_id=job_id,
        user_id=user_id,
        stage=stage,
        **kwargs
    )
    logger.info(f"{stage} stage started: {job_id}", extra=extra)


def log_stage_completed(
    logger: logging.Logger,
    job_id: str,
    user_id: str,
    stage: str,
    duration_ms: float,
    **kwargs
):
    extra = _build_log_extra(
        event="stage_completed",
        job_id=job_id,
        user_id=user_id,
        stage=stage,
        duration_ms=duration_ms,
        **kwargs
    )
    logger.info(f"{stage} stage completed: {job_id}", extra=extra)


def log_stage_failed(
    logger: logging.Logger,
    job_id: str,
    user_id: str,
    stage: str,
    error: str,
    duration_ms: Optional[float] = None,
    include_traceback: bool = True,
    **kwargs
):
    """
    Log a stage failure recorded on the job.

    Args:
        logger: Logger instance
        job_id: Job ID (required)
        user_id: Owner ID (required)
        stage: image or ai
        error: Error message stored on the job
        duration_ms: Optional duration in milliseconds
        include_traceback: Whether to include stack trace (default: True for errors)
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="stage_failed",
        job_id=job_id,
        user_id=user_id,
        stage=stage,
        duration_ms=duration_ms,
        error=str(error),
        **kwargs
    )
    message = f"{stage} stage failed: {job_id} - {error}"

    if include_traceback:
        exc_info = sys.exc_info()
        if exc_info[0] is not None:
            logger.error(message, extra=extra, exc_info=exc_info)
            return
    logger.error(message, extra=extra)


def log_stage_skipped(
    logger: logging.Logger,
    job_id: str,
    stage: str,
    reason: str,
    user_id: Optional[str] = None,
    **kwargs
):
    """Log a message acknowledged without work (job gone or already claimed)."""
    extra = _build_log_extra(
        event="stage_skipped",
        job_id=job_id,
        user_id=user_id,
        stage=stage,
        reason=reason,
        **kwargs
    )
    logger.info(f"{stage} stage skipped for {job_id}: {reason}", extra=extra)


def log_message_rejected(
    logger: logging.Logger,
    queue: str,
    error: str,
    **kwargs
):
    """Log a malformed queue payload dropped before any job lookup."""
    extra = _build_log_extra(
        event="message_rejected",
        queue=queue,
        error=str(error),
        **kwargs
    )
    logger.warning(f"Rejected malformed message on {queue}: {error}", extra=extra)


# Provider event functions

def log_provider_request(
    logger: logging.Logger,
    provider: str,
    operation: str,
    duration_ms: Optional[float] = None,
    job_id: Optional[str] = None,
    **kwargs
):
    """
    Log AI provider request event.

    Args:
        logger: Logger instance
        provider: Provider name (required)
        operation: Operation name (required)
        duration_ms: Optional duration in milliseconds
        job_id: Optional job ID
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="provider_request",
        job_id=job_id,
        duration_ms=duration_ms,
        provider=provider,
        operation=operation,
        **kwargs
    )
    logger.info(f"Provider request: {provider}.{operation}", extra=extra)


def log_provider_failure(
    logger: logging.Logger,
    provider: str,
    operation: str,
    error: str,
    duration_ms: Optional[float] = None,
    job_id: Optional[str] = None,
    **kwargs
):
    """Log AI provider failure event (no stack trace; the stage logs one)."""
    extra = _build_log_extra(
        event="provider_failure",
        job_id=job_id,
        duration_ms=duration_ms,
        provider=provider,
        operation=operation,
        error=str(error),
        **kwargs
    )
    logger.error(f"Provider failure: {provider}.{operation} - {error}", extra=extra)


def log_cleanup_completed(
    logger: logging.Logger,
    found: int,
    cleaned: int,
    duration_ms: Optional[float] = None,
    **kwargs
):
    extra = _build_log_extra(
        event="cleanup_completed",
        duration_ms=duration_ms,
        found=found,
        cleaned=cleaned,
        **kwargs
    )
    logger.info(f"Cleanup: removed {cleaned} of {found} expired jobs", extra=extra)


def configure_logging(service_name: str, log_level: str = "INFO"):
    """Configure logging (alias for StructuredLogger.configure)."""
    StructuredLogger.configure(service_name, log_level)
