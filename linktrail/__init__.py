"""linktrail: URL shortener with cache-aside redirects and per-redirect analytics."""

__version__ = "1.0.0"
