"""FastAPI status endpoint. Runs the settlement service in the same process."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from podsettle.api.schemas import BetView, ErrorResponse, HealthResponse
from podsettle.config import Settings, get_settings
from podsettle.storage.bets import BetStore

log = structlog.get_logger(__name__)

# Set by run_api() before uvicorn builds the app.
_config_profile: str | None = None
_config_dir: Path | None = None


def _error_json(code: str, message: str, status_code: int = 404) -> JSONResponse:
    """Return consistent error JSON: { detail, code }."""
    return JSONResponse(
        status_code=status_code,
        content={"detail": message, "code": code},
    )


def create_app(
    settings: Settings | None = None,
    *,
    store: BetStore | None = None,
    with_service: bool = True,
) -> FastAPI:
    """Build the API. With with_service the lifespan opens the store, recovers
    unfinished bets and runs the chain listener until shutdown."""
    settings = settings or get_settings(_config_profile, _config_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_store = store is None
        app.state.store = store or BetStore.open(settings.db_path)
        service = None
        if with_service:
            from podsettle.service import SettlementService

            service = SettlementService(settings, app.state.store)
            await service.start()
        try:
            yield
        finally:
            if service is not None:
                await service.stop()
            if owns_store:
                app.state.store.close()

    app = FastAPI(title="podsettle API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get(
        "/api/bet/{bet_id}",
        response_model=BetView,
        responses={404: {"model": ErrorResponse}},
    )
    def get_bet(bet_id: int, request: Request):
        """Current record of one bet."""
        bet = request.app.state.store.get(bet_id)
        if bet is None:
            return _error_json("not_found", f"Bet {bet_id} not found.")
        return BetView.from_bet(bet)

    return app


def run_api(
    host: str = "127.0.0.1",
    port: int = 8000,
    profile: str | None = None,
    config_dir: Path | None = None,
) -> None:
    global _config_profile, _config_dir
    _config_profile = profile
    _config_dir = config_dir
    import uvicorn

    uvicorn.run("podsettle.api.main:create_app", factory=True, host=host, port=port, reload=False)
