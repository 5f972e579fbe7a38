from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routes import migration as migration_routes
from .routes import offline as offline_routes
from .routes import sync as sync_routes

logger = logging.getLogger(__name__)

app = FastAPI(
    title="StoryVoice Sync API",
    version="0.1.0",
    description="Keeps StoryVoice's on-device cache and Supabase in step",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:8081",
        "http://127.0.0.1:8081",
        "http://localhost:19006",
        "http://127.0.0.1:19006",
    ],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(sync_routes.router)
app.include_router(migration_routes.router)
app.include_router(offline_routes.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
