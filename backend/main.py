from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings, set_log_level
from database import init_db
from job_manager import JobManager
from log_utils import install_safe_logging
from routers import channel_lineup, epg_files, imports, playlists, sync

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise logging and the database, then fail jobs a previous process left running."""
    install_safe_logging()
    settings = get_settings()
    set_log_level(settings.log_level)
    init_db()

    manager = JobManager(settings=settings)
    recovered = manager.recover_interrupted_jobs()
    if recovered:
        logger.warning("[STARTUP] %s job(s) were interrupted by the last shutdown", recovered)
    app.state.job_manager = manager
    logger.info("[STARTUP] Playlist sync service ready")

    yield

    running = manager.registry.running_count()
    if running:
        logger.warning("[SHUTDOWN] Stopping with %s job(s) still running", running)


app = FastAPI(
    title="Playlist Sync",
    description="IPTV playlist and program guide synchronisation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(playlists.router)
app.include_router(sync.router)
app.include_router(imports.router)
app.include_router(epg_files.router)
app.include_router(channel_lineup.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "playlist-sync"}
