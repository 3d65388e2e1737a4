"""CoinRotator FastAPI Application.

The lifespan builds the rotation engine (price oracle, executors, lock
manager, decision engine, settlement and scheduler), stores it on
app.state for the routers, and resumes bots left running by the previous
process.
"""

import sys
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .models import create_engine_and_session_maker, get_session, init_db
from .models import database
from .repositories import SqlRepositoryProvider
from .routers import audit, bots, health
from .services import (
    AssetLockManager,
    BotScheduler,
    CcxtExchangeExecutor,
    CoinGeckoPriceOracle,
    ConfigValidationException,
    DecisionEngine,
    EmailConfig,
    EmailService,
    ExchangePriceOracle,
    ExchangeService,
    FallbackPriceOracle,
    GlobalProtectionTracker,
    PriceOracle,
    RotatorSettings,
    SimulatedExchangeExecutor,
    TradeSettlement,
    config_service,
    configure_logging,
)

logger = logging.getLogger(__name__)


def build_price_oracle(settings: RotatorSettings, exchange: ExchangeService) -> PriceOracle:
    """Primary price source, wrapped with the fallback source when one is configured."""
    sources = {
        "exchange": lambda: ExchangePriceOracle(exchange),
        "coingecko": lambda: CoinGeckoPriceOracle(timeout_seconds=settings.price_timeout_seconds),
    }
    primary = sources[settings.primary_price_source]()
    fallback_source = settings.fallback_price_source
    if fallback_source in (None, "none") or fallback_source == settings.primary_price_source:
        return primary
    return FallbackPriceOracle(primary, sources[fallback_source]())


def build_scheduler(
    settings: RotatorSettings,
    provider: SqlRepositoryProvider,
    oracle: PriceOracle,
    exchange: Optional[ExchangeService],
    alerts: EmailService,
) -> BotScheduler:
    """Wire the engine components together."""
    lock_manager = AssetLockManager(provider, default_ttl=timedelta(seconds=settings.lock_ttl_seconds))
    protection = GlobalProtectionTracker()

    simulated = SimulatedExchangeExecutor(
        oracle,
        preferred_stablecoin=settings.preferred_stablecoin,
        fee_rate=settings.simulated_fee_rate,
    )
    if settings.dry_run or exchange is None or not exchange.is_connected():
        live = simulated
    else:
        live = CcxtExchangeExecutor(exchange, oracle, preferred_stablecoin=settings.preferred_stablecoin)

    engine = DecisionEngine(provider, oracle, protection=protection)
    settlement = TradeSettlement(
        provider,
        lock_manager,
        live,
        protection=protection,
        lock_ttl=timedelta(seconds=settings.lock_ttl_seconds),
        alerts=alerts,
        dry_run_executor=simulated,
    )
    return BotScheduler(
        provider,
        engine,
        settlement,
        lock_manager,
        alerts=alerts,
        default_interval_seconds=settings.default_check_interval_seconds,
        lock_cleanup_interval_seconds=settings.lock_cleanup_interval_seconds,
        log_dir=settings.log_directory,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup: Validate configuration
    try:
        config_service.load_and_validate()
        print("Configuration validated successfully")
    except ConfigValidationException as e:
        print(f"FATAL: {e}")
        print("Server cannot start with invalid configuration.")
        sys.exit(1)

    settings = RotatorSettings.from_config(config_service)
    configure_logging(settings)

    # Initialize database
    if settings.database_url:
        db_engine, session_maker = create_engine_and_session_maker(settings.database_url)

        async def get_configured_session():
            async with session_maker() as session:
                yield session

        app.dependency_overrides[get_session] = get_configured_session
    else:
        db_engine, session_maker = database.engine, database.async_session_maker
    await init_db(db_engine)
    print("Database initialized")

    exchange = ExchangeService(
        exchange_id=settings.exchange_id,
        api_key=settings.api_key,
        api_secret=settings.api_secret,
        sandbox=settings.sandbox_mode,
    )
    if not await exchange.connect():
        logger.warning(f"Exchange {settings.exchange_id} unavailable, live bots will be simulated")

    provider = SqlRepositoryProvider(session_maker)
    alerts = EmailService(EmailConfig.from_dict(settings.email))
    oracle = build_price_oracle(settings, exchange)
    scheduler = build_scheduler(settings, provider, oracle, exchange, alerts)

    app.state.settings = settings
    app.state.provider = provider
    app.state.scheduler = scheduler
    app.state.lock_manager = scheduler.lock_manager

    # Auto-resume bots that were running when server stopped
    resumed_count = await scheduler.resume_bots_on_startup()
    if resumed_count > 0:
        print(f"Resumed {resumed_count} bot(s) from previous session")
    scheduler.start_lock_cleanup()

    yield

    print("Initiating graceful shutdown...")
    shutdown_count = await scheduler.graceful_shutdown()
    if shutdown_count > 0:
        print(f"Stopped {shutdown_count} bot loop(s), they resume on next start")

    await exchange.disconnect()
    if db_engine is not database.engine:
        await db_engine.dispose()
    print("Graceful shutdown complete")


app = FastAPI(
    title="CoinRotator API",
    description="Coin rotation bot engine API",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(bots.router, prefix="/api/bots", tags=["Bots"])
app.include_router(audit.router, prefix="/api", tags=["Audit"])


@app.get("/")
async def root():
    """Root endpoint redirect to docs."""
    return {"message": "CoinRotator API", "docs": "/docs"}
