"""
Common utilities for the recovery-buddy API handlers.

Modules:
- config: environment / SSM configuration helpers
- http: API Gateway proxy event parsing and responses
- kv_cache: key-value cache REST client
- flags: Edge Config feature-flag reader
- blob: S3 avatar storage
- wordpress: membership registration client
"""

__all__ = [
    "config",
    "http",
    "kv_cache",
    "flags",
    "blob",
    "wordpress",
]
