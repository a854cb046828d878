# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from common.logging_setup import client_var, req_id_var, route_var

logger = logging.getLogger(__name__)

# Polled every few seconds by each bot; only logged at debug.
QUIET_PATHS = ("/health", "/api/health", "/api/task", "/api/bot-status")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id, the route and the caller to the logging context for one
    request, echoes the id back as ``X-Request-ID`` and writes one access line
    tagged with the calling bot, when there is one.
    """

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        peer = f"{getattr(request.client, 'host', '?')}:{getattr(request.client, 'port', '?')}"
        bound = (
            req_id_var.set(rid),
            route_var.set(f"{request.method} {request.url.path}"),
            client_var.set(peer),
        )
        t0 = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            quiet = request.url.path in QUIET_PATHS and status < 400
            logger.log(
                logging.DEBUG if quiet else logging.INFO,
                "[📥] %s %s -> %d",
                request.method,
                request.url.path,
                status,
                extra={
                    "bot": request.query_params.get("bot"),
                    "peer": peer,
                    "took_ms": round((time.perf_counter() - t0) * 1000, 1),
                },
            )
            for var, token in zip((req_id_var, route_var, client_var), bound):
                var.reset(token)
