"""GitLab API access, metric store, task queue and webhook handling for CI metrics."""

__version__ = "0.1.0"