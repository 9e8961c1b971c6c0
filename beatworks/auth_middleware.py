"""
Shared-secret authentication middleware for the worker.

Every mutating request (POST/PUT/PATCH/DELETE) requires a valid
X-Worker-Secret header matching WORKER_SHARED_SECRET. The web app attaches
this header when forwarding requests to the worker. Reads stay open so
progress pollers do not need the secret.
"""

import os
import secrets
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated mutating requests."""

    # Paths that are always public (health checks, etc.)
    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, secret: Optional[str] = None, environment: Optional[str] = None):
        super().__init__(app)
        self.secret = secret if secret is not None else os.environ.get("WORKER_SHARED_SECRET", "")
        self.environment = environment or os.environ.get("ENVIRONMENT", "development")

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.PUBLIC_PATHS or request.method not in MUTATING_METHODS:
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
