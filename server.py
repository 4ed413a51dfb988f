from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from database.mongodb import db, ensure_indexes
from config import get_settings
from routes import invoices, external, mydata
from services.mydata_client import MyDataClient
import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the app"""
    # Startup
    await db.connect(settings.mongo_url, settings.db_name)
    await ensure_indexes(db.get_db())
    app.state.mydata_client = MyDataClient(settings)
    await app.state.mydata_client.open()
    logger.info(f"myDATA invoicing backend started ({settings.environment})")
    yield
    # Shutdown
    await app.state.mydata_client.close()
    await db.disconnect()
    logger.info("myDATA invoicing backend stopped")

app = FastAPI(
    title="myDATA Invoicing API",
    description="Greek e-invoicing: numbering, totals and myDATA transmission",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(invoices.router)
app.include_router(external.router)
app.include_router(mydata.router)


@app.get("/")
async def root():
    return {
        "message": "myDATA Invoicing API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api")
async def api_root():
    return {
        "message": "myDATA Invoicing API",
        "endpoints": {
            "invoices": "/api/invoices",
            "external": "/api/external",
            "mydata": "/api/mydata"
        }
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": settings.environment,
        "mydata_client": "open" if app.state.mydata_client.is_open else "closed"
    }
