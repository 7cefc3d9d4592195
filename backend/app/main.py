import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.auth.errors import SocialAuthError, TokenVerificationError
from app.core.config import settings, require_jwt_secret
from app.routes.social_auth import router as social_auth_router

logger = logging.getLogger(__name__)

require_jwt_secret()

app = FastAPI(title="Social Sign-In")
logger.info(
    "Startup config: google=%s apple=%s include_user=%s email_collision_policy=%s",
    bool(settings.GOOGLE_CLIENT_IDS),
    bool(settings.APPLE_CLIENT_IDS),
    settings.SOCIAL_AUTH_INCLUDE_USER,
    settings.SOCIAL_EMAIL_COLLISION_POLICY,
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


def _error_payload(error: str, detail: str | None) -> dict:
    payload: dict = {"error": error}
    if detail:
        payload["detail"] = detail
    return payload


@app.exception_handler(SocialAuthError)
def social_auth_exception_handler(request: Request, exc: SocialAuthError):  # noqa: ARG001
    detail: str | None = str(exc) or None
    if isinstance(exc, TokenVerificationError) and not settings.AUTH_ERROR_DETAIL:
        # Don't tell a hostile caller which check failed; the log line has it.
        detail = None
    headers = {"Retry-After": "1"} if exc.status_code == 503 else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(exc.code, detail),
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: StarletteHTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str | None
    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        msg = detail.get("detail") or detail.get("message")
        message = msg if isinstance(msg, str) and msg else None
    else:
        message = str(detail) if detail is not None else None

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(_error_code(exc.status_code), message),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    fields = sorted({".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()})
    detail = "Invalid request payload"
    if fields and any(fields):
        detail = f"Invalid request payload: {', '.join(f for f in fields if f)}"
    return JSONResponse(status_code=422, content=_error_payload("VALIDATION_ERROR", detail))


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content=_error_payload("INTERNAL_ERROR", None))


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(social_auth_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
