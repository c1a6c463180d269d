"""Main FastAPI application entry point."""
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ecsrs import config
from ecsrs.database import init_db
from ecsrs.api.routes import router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
init_db()

app = FastAPI(
    title="ECSRS - Environmental Complaint Submission & Reporting System",
    description="Citizen environmental complaint intake, triage, field resolution and public tracking.",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials="*" not in config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api", tags=["Reports"])


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "ECSRS"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
