import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import load_settings
from core import DropVaultCore
from errors import InvalidSchedule, StorageFailure
from schemas import ScheduleOut, ScheduleUpdate, SweepOut
from secure_share import constant_time_equals
from share_routes import get_core, router as share_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(core: Optional[DropVaultCore] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "core", None) is None:
            app.state.core = DropVaultCore(load_settings())
        app.state.core.start()
        yield
        app.state.core.shutdown()

    app = FastAPI(
        title="DropVault API",
        description="Self-hosted file drop: share tokens, encrypted storage and lifecycle sweeps",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.core = core

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(share_router)

    # ─── Error handlers ──────────────────────────────────────────

    @app.exception_handler(StorageFailure)
    async def storage_failure_handler(request: Request, exc: StorageFailure):
        logger.error(f"Storage failure on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"detail": "Internal storage error"})

    # ─── Admin guard ──────────────────────────────────────────

    def require_admin(
        x_admin_token: Optional[str] = Header(None),
        core: DropVaultCore = Depends(get_core),
    ) -> DropVaultCore:
        expected = core.settings.admin_token
        if not expected:
            raise HTTPException(status_code=403, detail="Admin endpoints are disabled")
        if not constant_time_equals(x_admin_token or "", expected):
            raise HTTPException(status_code=401, detail="Invalid admin token")
        return core

    # ─── System ──────────────────────────────────────────────

    @app.get("/health", tags=["System"])
    def health(core: DropVaultCore = Depends(get_core)):
        return {
            "status": "ok",
            "service": "DropVault",
            "scheduler_running": core.scheduler.running,
            "notifications_running": core.notifications.is_running,
            "blob_store": core.blobs.backend_name,
        }

    # ─── Files ──────────────────────────────────────────────

    @app.get("/files", tags=["Files"])
    def list_files(core: DropVaultCore = Depends(get_core)):
        return core.files.list_files()

    @app.get("/admin/files", tags=["Admin"])
    def list_admin_files(core: DropVaultCore = Depends(require_admin)):
        return core.files.list_admin_files()

    @app.get("/admin/analytics", tags=["Admin"])
    def analytics(core: DropVaultCore = Depends(require_admin)):
        return core.files.analytics()

    # ─── Lifecycle ──────────────────────────────────────────────

    @app.post("/admin/sweep", response_model=SweepOut, tags=["Admin"])
    def run_sweep(core: DropVaultCore = Depends(require_admin)):
        removed = core.run_expiry_sweep_now()
        return SweepOut(expired_files_removed=removed)

    def _schedule_out(core: DropVaultCore) -> ScheduleOut:
        next_run = core.scheduler.next_expiry_run()
        return ScheduleOut(
            file_deletion_cron=core.settings.file_deletion_cron,
            max_file_lifetime_days=core.settings.max_file_lifetime_days,
            next_run=next_run.isoformat() if next_run else None,
        )

    @app.get("/admin/schedule", response_model=ScheduleOut, tags=["Admin"])
    def get_schedule(core: DropVaultCore = Depends(require_admin)):
        return _schedule_out(core)

    @app.put("/admin/schedule", response_model=ScheduleOut, tags=["Admin"])
    def update_schedule(req: ScheduleUpdate, core: DropVaultCore = Depends(require_admin)):
        changes = {k: v for k, v in req.model_dump().items() if v is not None}
        try:
            core.apply_settings(core.settings.model_copy(update=changes))
        except InvalidSchedule as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _schedule_out(core)

    return app


app = create_app()
