import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from magnetboard.api.routes import router as api_router
from magnetboard.config.settings import Settings, get_settings
from magnetboard.engine.rule_store import RuleStore
from magnetboard.engine.session import BoardSession
from magnetboard.exceptions import PersistenceError, RuleConfigurationError, UnknownRecordError
from magnetboard.storage.change_feed import RedisChangeFeed
from magnetboard.storage.database import init_db, make_engine, make_session_factory
from magnetboard.storage.store import SqlBackingStore
from magnetboard.utils.logging_config import setup_logging


logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.debug)

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        description="Rule engine for a construction job-scheduling magnet board",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Starting {settings.app_name}...")
        engine = make_engine(settings.database_url)
        init_db(engine)
        logger.info("Database initialized")
        feed = RedisChangeFeed(settings.redis_url, settings.change_channel) if settings.use_redis_feed else None
        store = SqlBackingStore(make_session_factory(engine), feed)
        rule_store = RuleStore.from_settings(settings)
        board = BoardSession(store, rule_store, settings)
        board.connect()
        board.hydrate()
        app.state.board = board

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info(f"Shutting down {settings.app_name}...")
        board = getattr(app.state, "board", None)
        if board is not None:
            board.disconnect()
            if isinstance(board.store.feed, RedisChangeFeed):
                board.store.feed.close()

    @app.exception_handler(UnknownRecordError)
    async def unknown_record_handler(request: Request, exc: UnknownRecordError):
        return JSONResponse(status_code=404, content={"detail": f"unknown id {exc.args[0]}"})

    @app.exception_handler(RuleConfigurationError)
    async def rule_configuration_handler(request: Request, exc: RuleConfigurationError):
        logger.warning(f"Rule set rejected: {exc}")
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    app.include_router(api_router, prefix="/api/v1", tags=["board"])

    @app.get("/health", tags=["health"])
    def health_check():
        """Health check endpoint for monitoring and load balancers."""
        return {"status": "ok", "app": settings.app_name, "version": "1.0.0"}

    return app


app = create_app()
