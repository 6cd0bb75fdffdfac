"""Infrastructure layer for the audio similarity search service.

Modules:
    metrics     Prometheus metrics registry and latency timer.
"""
