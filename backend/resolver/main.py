"""FastAPI application entry point.

Configures CORS middleware and registers the chat API router under the
/api prefix. Health check at GET /.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import chat_routes
from .core.config import get_settings

settings = get_settings()

app = FastAPI(title=settings.app_name)

origins = [o.strip() for o in settings.cors_origins.split(",")]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(chat_routes.router, prefix="/api")


@app.get("/")
async def root():
    return {"message": "Service is running"}
