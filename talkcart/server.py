import logging

import uvicorn
from fastapi import APIRouter, FastAPI
from starlette.middleware.cors import CORSMiddleware

from . import (
    auth, chatbot, marketplace, messages, notifications, orders, payouts, posts, users, webhooks,
)
from .config import settings
from .database import connect, ensure_indexes

# Create the main app without a prefix
app = FastAPI(title="TalkCart API")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

for module in (auth, users, posts, notifications, messages, marketplace, orders, payouts, chatbot, webhooks):
    api_router.include_router(module.router)
api_router.include_router(posts.profile_router)


# Health check
@api_router.get("/")
async def root():
    return {"message": "TalkCart API is running"}

# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup_db_client():
    app.state.client, app.state.db = connect()
    await ensure_indexes(app.state.db)
    logger.info("Connected to MongoDB database %s", settings.db_name)


@app.on_event("shutdown")
async def shutdown_db_client():
    app.state.client.close()


def run():
    uvicorn.run("talkcart.server:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
