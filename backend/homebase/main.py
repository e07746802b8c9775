import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from homebase import config
from homebase.errors import HomeBaseError
from homebase.routers import auth, notifications, workflows
from homebase.services.change_feed import change_feed
from homebase.services.email_sender import email_sender
from homebase.services.push_sender import push_sender
from homebase.services.workflow_engine import workflow_state_machine

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="HomeBase Workflow API", version="0.1.0")

allow_any_origin = len(config.CORS_ORIGINS) == 1 and config.CORS_ORIGINS[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not (len(config.TRUSTED_HOSTS) == 1 and config.TRUSTED_HOSTS[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=config.TRUSTED_HOSTS)

app.include_router(workflows.router)
app.include_router(notifications.router)
app.include_router(auth.router)


@app.exception_handler(HomeBaseError)
def handle_homebase_error(request: Request, exc: HomeBaseError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
def handle_http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
def handle_request_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"error": f"{location}: {message}" if location else message})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    return {
        "status": "ready",
        "actions": sorted(workflow_state_machine.supported_actions()),
        "push_configured": push_sender.configured,
        "email_configured": email_sender.configured,
        "change_feed_subscribers": change_feed.subscriber_count(),
    }
