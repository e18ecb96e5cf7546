"""HTTP middleware."""

from .body_limit import BodyLimitMiddleware
from .request_tracking import RequestTrackingMiddleware

__all__ = ["BodyLimitMiddleware", "RequestTrackingMiddleware"]
