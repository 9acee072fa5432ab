"""
Decorator for tracking AI provider metrics.
"""
import time
import functools
from imagepipe.utils.metrics import (
    ai_provider_requests_total,
    ai_provider_failures_total,
    ai_provider_latency_seconds,
    ai_provider_tokens_total
)


def _record_token_usage(result, provider_name: str, operation: str) -> None:
    usage = getattr(result, 'usage', None)
    if usage is None:
        return
    for attribute, token_type in (('prompt_tokens', 'prompt'), ('completion_tokens', 'completion')):
        count = getattr(usage, attribute, None)
        if isinstance(count, int):
            ai_provider_tokens_total.labels(
                provider=provider_name,
                operation=operation,
                token_type=token_type
            ).inc(count)


def track_ai_provider_metrics_async(provider_name: str, operation: str):
    """
    Async decorator to track AI provider metrics.

    Args:
        provider_name: Provider name (openai)
        operation: Operation name (analyze_image)
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()

            ai_provider_requests_total.labels(
                provider=provider_name,
                operation=operation
            ).inc()

            try:
                result = await func(*args, **kwargs)
            except Exception:
                ai_provider_failures_total.labels(
                    provider=provider_name,
                    operation=operation
                ).inc()
                raise
            finally:
                ai_provider_latency_seconds.labels(
                    provider=provider_name,
                    operation=operation
                ).observe(time.time() - start_time)

            _record_token_usage(result, provider_name, operation)
            return result

        return wrapper
    return decorator
