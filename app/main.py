import sys
import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

# Set Windows Event Loop Policy for subprocess support
if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

from starlette.middleware.sessions import SessionMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from app.core import config
from app.core.errors import BranchingTrailError, ExpansionFailedError
from app.services.llm_service import GeminiAgent
from app.services.prompt_generators import PromptGenerator
from app.services.session_repository import create_repository
from app.services.tree_service import BranchingTreeService
from app.routers import sessions, generate

from contextlib import asynccontextmanager

if config.LOG_LEVEL == "NONE":
    logging.disable(logging.CRITICAL)
else:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if sys.platform == 'win32':
        loop = asyncio.get_running_loop()
        from asyncio import ProactorEventLoop
        if not isinstance(loop, ProactorEventLoop):
            logger.warning("Running on %s, but ProactorEventLoop is required for subprocesses.", type(loop).__name__)
    logger.info("Session storage: %s", app.state.repository.diagnostics())
    yield

app = FastAPI(lifespan=lifespan)

# Session Middleware
# We enable https_only if the origin starts with https
https_only = config.ORIGIN.startswith("https")
app.add_middleware(
    SessionMiddleware,
    secret_key=config.SESSION_SECRET,
    session_cookie="branching_session",
    same_site="lax",
    https_only=https_only
)

# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if https_only:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(BranchingTrailError)
async def branching_error_handler(request: Request, exc: BranchingTrailError):
    body = {"error": exc.message}
    if isinstance(exc, ExpansionFailedError) and exc.session is not None:
        body["session"] = exc.session.model_dump()
        body["nodeId"] = exc.node_id
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
    return JSONResponse(status_code=500, content={"error": "An internal server error occurred."})


# Services
repository = create_repository()
agent = GeminiAgent()
prompt_generator = PromptGenerator(agent)
tree_service = BranchingTreeService(repository, prompt_generator)

# App State
app.state.repository = repository
app.state.agent = agent
app.state.prompt_generator = prompt_generator
app.state.tree_service = tree_service

# Include Routers
app.include_router(sessions.router, prefix="/api")
app.include_router(generate.router, prefix="/api/generate")


@app.get("/api/health")
async def health():
    return {"status": "ok", "storage": repository.diagnostics(), "model": agent.model_name}

if __name__ == "__main__":
    import uvicorn
    import argparse

    parser = argparse.ArgumentParser(description="Run the Branching Trail API")
    parser.add_argument("--port", type=int, default=8000, help="Port to run the service on")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to")
    args = parser.parse_args()

    uvicorn.run(app, host=args.host, port=args.port)
