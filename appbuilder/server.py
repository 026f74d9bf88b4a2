# FILE: appbuilder/server.py
import logging

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from appbuilder.api.generate import router as generate_router
from appbuilder.core.config import CORS_ORIGINS
from appbuilder.core.database import engine, init_models
from appbuilder.services.runtime import get_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("appbuilder.server")

# Create the main app
app = FastAPI(title="App Builder", version="1.0.0")

# Include the routers in the main app
app.include_router(generate_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/")
async def root():
    return {"message": "App Builder API - generation job orchestrator"}


@app.on_event("startup")
async def create_tables():
    await init_models()
    logger.info("Database tables ready")


@app.on_event("shutdown")
async def shutdown():
    await get_services().preview.shutdown()
    await engine.dispose()
