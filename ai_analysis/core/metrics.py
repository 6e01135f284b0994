"""
Prometheus Metrics Registry

Provides Prometheus-compatible metrics for:
- AI provider calls (count, latency) by provider/model/status
- Retries scheduled by the analysis orchestrator
- Temporary video artifacts created and deleted
- Final analysis outcomes by error kind
"""
import logging
from prometheus_client import (
    Counter, Histogram, CollectorRegistry, generate_latest
)

logger = logging.getLogger(__name__)

# Custom registry to avoid conflicts with the host application's default registry
REGISTRY = CollectorRegistry()

# ============================================================================
# AI API Metrics
# ============================================================================

ai_api_calls_total = Counter(
    'ai_api_calls_total',
    'Total AI provider calls',
    ['provider', 'model', 'status'],
    registry=REGISTRY
)

ai_api_duration_seconds = Histogram(
    'ai_api_duration_seconds',
    'AI provider call duration in seconds',
    ['provider', 'model'],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
    registry=REGISTRY
)

# ============================================================================
# Orchestration Metrics
# ============================================================================

analysis_retries_total = Counter(
    'analysis_retries_total',
    'Retries scheduled after a retry-eligible failure',
    ['provider', 'error_kind'],
    registry=REGISTRY
)

analysis_outcomes_total = Counter(
    'analysis_outcomes_total',
    'Final analysis outcomes',
    ['content_type', 'result'],  # result: success or an error kind
    registry=REGISTRY
)

temp_artifacts_total = Counter(
    'temp_artifacts_total',
    'Temporary downsampled video files',
    ['action'],  # action: created, deleted
    registry=REGISTRY
)


def record_ai_api_call(
    provider: str,
    model: str,
    status: str,
    duration_seconds: float,
):
    """
    Record AI provider call metrics.

    Args:
        provider: AI provider (openai, gemini, claude)
        model: Model name
        status: Call status (success, error)
        duration_seconds: Call duration
    """
    ai_api_calls_total.labels(provider=provider, model=model, status=status).inc()
    ai_api_duration_seconds.labels(provider=provider, model=model).observe(duration_seconds)


def record_retry(provider: str, error_kind: str):
    """Record a scheduled retry."""
    analysis_retries_total.labels(provider=provider, error_kind=error_kind).inc()


def record_outcome(content_type: str, result: str):
    """Record the terminal result of an analysis request."""
    analysis_outcomes_total.labels(content_type=content_type, result=result).inc()


def record_temp_artifact(action: str):
    """Record creation or deletion of a temporary video artifact."""
    temp_artifacts_total.labels(action=action).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output in text exposition format."""
    return generate_latest(REGISTRY)

