"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware: request_id and user_id in every log line, X-Request-ID echoed
    2. ErrorHandlerMiddleware: escrow workflow errors -> status code + {"error", "message"}
    3. CORSMiddleware: origins from settings.cors_allow_origins
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from milestone_escrow.domain.exceptions import (
    AgreementClosedError,
    EscrowWorkflowError,
    ExternalProviderError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    NotFoundError,
    PreconditionBlockedError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
    StaleStateError,
    TransactionNotOpenForEvidenceError,
    UnauthorizedError,
    ValidationError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

    from milestone_escrow.config import Settings

logger = structlog.get_logger(__name__)

# Conflicts with current state: the caller should re-fetch and decide again.
_CONFLICT_ERRORS = (
    StaleStateError,
    InvalidStateTransitionError,
    AgreementClosedError,
    TransactionNotOpenForEvidenceError,
)


def _error_body(exc: EscrowWorkflowError, **extra: object) -> dict:
    return {"error": exc.code, "message": exc.message, **extra}


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Bind request_id and the calling user to every log line of the request.

    The id is taken from X-Request-ID when the gateway sets one and echoed on
    the response. One "request.completed" line closes each request.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            user_id=request.headers.get("X-User-Id"),
        )

        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "request.completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except NotFoundError as exc:
            logger.warning("resource.not_found", error=exc.message)
            return JSONResponse(status_code=404, content=_error_body(exc))
        except ValidationError as exc:
            logger.warning("request.invalid", error=exc.message, field=exc.field)
            return JSONResponse(status_code=422, content=_error_body(exc, field=exc.field))
        except PreconditionBlockedError as exc:
            logger.warning("preconditions.rejected", action=exc.action)
            return JSONResponse(
                status_code=409,
                content=_error_body(exc, blocking_reasons=exc.reasons_as_dicts()),
            )
        except UnauthorizedError as exc:
            logger.warning("actor.unauthorized", actor_id=exc.actor_id, action=exc.action)
            return JSONResponse(status_code=403, content=_error_body(exc))
        except _CONFLICT_ERRORS as exc:
            logger.warning("state.conflict", error=exc.message, code=exc.code)
            return JSONResponse(status_code=409, content=_error_body(exc))
        except InsufficientFundsError as exc:
            logger.warning("escrow.insufficient_funds", required=exc.required, available=exc.available)
            return JSONResponse(status_code=422, content=_error_body(exc))
        except ProviderTimeoutError as exc:
            logger.error("payment.timeout", error=exc.message)
            return JSONResponse(
                status_code=504, content=_error_body(exc, outcome=exc.outcome)
            )
        except ExternalProviderError as exc:
            logger.error("payment.failed", error=exc.message, provider_code=exc.provider_code)
            return JSONResponse(
                status_code=502,
                content=_error_body(exc, outcome=exc.outcome, provider_code=exc.provider_code),
            )
        except ProviderNotConfiguredError as exc:
            logger.error("payment.not_configured", setting=exc.setting)
            return JSONResponse(status_code=503, content=_error_body(exc))
        except EscrowWorkflowError as exc:
            logger.error("domain.error", error=exc.message, code=exc.code)
            return JSONResponse(status_code=400, content=_error_body(exc))
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware on the FastAPI application.

    Order matters: middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID", "X-User-Id", "X-User-Role"],
        expose_headers=["X-Request-ID"],
    )

    app.add_middleware(ErrorHandlerMiddleware)

    # Outermost, so every log line in the request carries the id.
    app.add_middleware(RequestIDMiddleware)
