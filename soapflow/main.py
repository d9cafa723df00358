import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from soapflow.api import runs
from soapflow.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(
    title="Soapflow",
    description="SOAP/REST test case and workflow execution engine",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(runs.router, prefix="/api/runs", tags=["runs"])


@app.get("/health")
async def health():
    return {"status": "healthy"}
