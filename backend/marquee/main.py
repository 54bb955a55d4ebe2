from fastapi import FastAPI, HTTPException
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from marquee.core.database import SessionLocal, init_db
from marquee.core.redis_client import get_redis
from marquee.utils.timezone import utc_now
from marquee.utils.logger import logger

from marquee.api import requests, services, search, status, trakt_auth
from marquee.api.notifications import router as notifications_router


app = FastAPI(title="Marquee API", version="1.0.0")

# Add GZip compression middleware for better transfer performance
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Core API routers
app.include_router(requests.router, prefix="/api/requests", tags=["Requests"])
app.include_router(services.router, prefix="/api/services", tags=["Services"])
app.include_router(search.router, prefix="/api/search", tags=["Search"])
app.include_router(status.router, prefix="/api/status", tags=["Status"])
app.include_router(trakt_auth.router, prefix="/api/trakt", tags=["Trakt"])
app.include_router(notifications_router, prefix="/api/notifications", tags=["Notifications"])


@app.on_event("startup")
async def startup_event():
    await init_db()
    logger.info("Marquee API started")


@app.get("/")
def root():
    return {"status": "Marquee API Running"}


@app.get("/health")
async def health_check():
    """Simple health check endpoint for load balancers/monitoring"""
    try:
        await get_redis().ping()

        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

        return {"status": "healthy", "timestamp": utc_now().isoformat()}
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {str(e)}")
