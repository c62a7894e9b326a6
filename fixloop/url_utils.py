"""Scheme normalization for configured service URLs.

The advisor endpoint is handed to an OpenAI-compatible client and the counter
store URL to redis-py; both reject scheme-less URLs with unhelpful errors.
"""

_HTTP_SCHEMES = ("http://", "https://")
_REDIS_SCHEMES = ("redis://", "rediss://", "unix://")


def ensure_url_protocol(url: str) -> str:
    """Prepend http:// if URL has no protocol. Empty strings pass through."""
    if not url or not str(url).strip():
        return url
    s = str(url).strip()
    if s.startswith(_HTTP_SCHEMES):
        return s
    return f"http://{s}"


def ensure_redis_protocol(url: str) -> str:
    """Prepend redis:// to bare host:port values. Empty strings pass through."""
    if not url or not str(url).strip():
        return url
    s = str(url).strip()
    if s.startswith(_REDIS_SCHEMES):
        return s
    return f"redis://{s}"
