"""
Prometheus metrics definitions for the API and the Celery workers.
All metrics are registered here and can be imported by other modules.
"""
from prometheus_client import Counter, Histogram, Gauge

# HTTP request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Error metrics
errors_total = Counter(
    'errors_total',
    'Total errors',
    ['error_type']
)

# Job lifecycle (API)
jobs_created_total = Counter(
    'jobs_created_total',
    'Total jobs created'
)

jobs_cleaned_total = Counter(
    'jobs_cleaned_total',
    'Total jobs removed by the retention sweep'
)

cache_misses_total = Counter(
    'cache_misses_total',
    'Job view cache misses',
    ['view']
)

# Stage consumers (worker); stage is "image" or "ai"
jobs_processed_total = Counter(
    'jobs_processed_total',
    'Total jobs that completed a stage',
    ['stage']
)

jobs_failed_total = Counter(
    'jobs_failed_total',
    'Total jobs that failed a stage',
    ['stage']
)

jobs_processing = Gauge(
    'jobs_processing',
    'Number of jobs currently in a stage',
    ['stage']
)

job_processing_duration_seconds = Histogram(
    'job_processing_duration_seconds',
    'Time from Processing to a terminal state',
    ['stage', 'status'],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# AI provider metrics
ai_provider_requests_total = Counter(
    'ai_provider_requests_total',
    'Total AI provider requests',
    ['provider', 'operation']
)

ai_provider_failures_total = Counter(
    'ai_provider_failures_total',
    'Total AI provider failures',
    ['provider', 'operation']
)

ai_provider_latency_seconds = Histogram(
    'ai_provider_latency_seconds',
    'AI provider request latency in seconds',
    ['provider', 'operation'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0]
)

ai_provider_tokens_total = Counter(
    'ai_provider_tokens_total',
    'Total AI provider tokens used',
    ['provider', 'operation', 'token_type']
)
