from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .database import Base, engine, ensure_meta_schema_migrations, get_db
from .logging_config import configure_logging
from .prices_database import PricesBase, prices_engine
from .routers import holdings as holdings_router
from .routers import optimization as optimization_router

# Register ORM tables on their metadata before create_all.
from . import models as _models  # noqa: F401
from . import prices_models as _prices_models  # noqa: F401


def create_app(settings: Settings | None = None) -> FastAPI:
    """FastAPI application factory for PortfolioLab."""

    _settings = settings or get_settings()
    configure_logging(_settings.log_level)

    Base.metadata.create_all(bind=engine)
    PricesBase.metadata.create_all(bind=prices_engine)
    ensure_meta_schema_migrations()

    app = FastAPI(title=_settings.app_name)

    # Basic CORS for local dev (frontend on 5173).
    origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health(db: Session = Depends(get_db)) -> dict[str, str]:
        # Dependency ensures DB connectivity is at least attempted.
        _ = db
        return {"status": "ok", "service": "portfoliolab"}

    app.include_router(holdings_router.router)
    app.include_router(optimization_router.router)

    return app


app = create_app()
