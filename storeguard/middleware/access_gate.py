"""
Access gate. Enforces the access decision on configured path prefixes.

Blocked visitors get 403 {error, message, code: "ACCESS_BLOCKED", reason}.
Anything else, including every failure inside the gate, passes through.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from storeguard.config import get_settings
from storeguard.core.decision import AccessDecider
from storeguard.core.signals import extract_signals
from storeguard.models.database import get_session_maker

import structlog

logger = structlog.get_logger()


class AccessGateMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, prefixes: list[str] | None = None, decider: AccessDecider | None = None,
                 session_maker=None):
        super().__init__(app)
        self.prefixes = tuple(prefixes if prefixes is not None else get_settings().gated_path_prefixes)
        self.decider = decider or AccessDecider()
        self._session_maker = session_maker

    def is_gated(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.prefixes)

    async def dispatch(self, request: Request, call_next):
        if not self.prefixes or not self.is_gated(request.url.path):
            return await call_next(request)

        verdict = None
        try:
            signals = extract_signals(request)
            if not self.decider.should_skip(signals):
                session_maker = self._session_maker or get_session_maker()
                async with session_maker() as db:
                    verdict = await self.decider.decide(db, signals)
        except Exception as e:
            logger.warning("access_check_failed", stage="gate", path=request.url.path, error=str(e))
            verdict = None

        if verdict is not None and verdict.blocked:
            return JSONResponse(
                status_code=403,
                content={
                    "error": "Access denied",
                    "message": verdict.message,
                    "code": "ACCESS_BLOCKED",
                    "reason": verdict.reason,
                },
            )

        return await call_next(request)
