from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .routes_auth import router as auth_router
from .routes_credentials import oauth_router, router as credentials_router
from .routes_ops import router as ops_router
from .routes_video_ideas import router as video_ideas_router
from .routes_webhooks import router as webhooks_router
from .settings import get_settings

logger = logging.getLogger("reelcast")

app = FastAPI(title="reelcast")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(auth_router)
app.include_router(video_ideas_router)
app.include_router(credentials_router)
app.include_router(oauth_router)
app.include_router(webhooks_router)
app.include_router(ops_router)


@app.on_event("startup")
async def startup_event():
    """Start the watchdog scheduler on app startup."""
    from .services.scheduler import SchedulerService

    SchedulerService.get_instance().start()


@app.on_event("shutdown")
async def shutdown_event():
    from .services.scheduler import SchedulerService

    SchedulerService.get_instance().stop()
