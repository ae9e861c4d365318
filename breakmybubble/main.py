"""
Break My Bubble - Feed Operations API
Health, monitoring, cache and refresh controls for the NewsAPI request layer
"""
import dataclasses
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from breakmybubble.cache import (
    Article,
    FreshnessPolicy,
    TieredCache,
    create_store,
    format_cache_age,
)
from breakmybubble.errors import (
    FatalAPIError,
    QueueClearedError,
    RefreshNotInitializedError,
    RequestError,
    RequestTimeoutError,
    TransientAPIError,
)
from breakmybubble.feeds import FeedService
from breakmybubble.governor import RateLimitConfig, RequestGovernor, RetryPolicy
from breakmybubble.monitoring import RequestMonitor
from breakmybubble.newsapi import NEWSAPI_RETRY_POLICY, NewsApiClient
from breakmybubble.refresh import BackgroundRefreshScheduler, RefreshConfig
from breakmybubble.schemas import RateLimitUpdate, RefreshConfigUpdate
from config.settings import Settings, settings

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("api")

APP_VERSION = "v0.1.0"
APP_NAME = "Break My Bubble"
APP_STAGE = "Alpha"


@dataclass
class Services:
    """Everything the API routes talk to, wired once per process."""
    cache: TieredCache
    governor: RequestGovernor
    scheduler: BackgroundRefreshScheduler
    feeds: FeedService
    monitor: RequestMonitor
    news_client: Optional[NewsApiClient] = None
    refresh_config: Optional[RefreshConfig] = None


def build_services(config: Settings = settings) -> Services:
    """Wire cache, governor, client, feeds, scheduler and monitor from settings."""
    store = create_store(
        config.cache_backend,
        directory=config.cache_directory,
        database_url=config.cache_database_url,
    )
    cache = TieredCache(
        store=store,
        policy=FreshnessPolicy(
            fresh_seconds=config.cache_fresh_seconds,
            stale_seconds=config.cache_stale_seconds,
            max_age_seconds=config.cache_max_age_seconds,
        ),
    )

    retry_policy = RetryPolicy(
        max_retries=config.retry_max_retries,
        base_delay=config.retry_base_delay_seconds,
        max_delay=config.retry_max_delay_seconds,
        backoff_multiplier=config.retry_backoff_multiplier,
        jitter=config.retry_jitter_seconds,
    )
    governor = RequestGovernor(
        rate_limits=RateLimitConfig(
            requests_per_second=config.requests_per_second,
            requests_per_minute=config.requests_per_minute,
            requests_per_hour=config.requests_per_hour,
            requests_per_day=config.requests_per_day,
        ),
        retry_policy=retry_policy,
        default_timeout=config.request_timeout_seconds,
        max_concurrent=config.max_concurrent_requests,
        tick_interval=config.queue_tick_seconds,
    )

    news_client = None
    if config.news_api_key:
        news_client = NewsApiClient(
            config.news_api_key,
            governor,
            base_url=config.news_api_base_url,
            timeout=config.request_timeout_seconds,
            retry_policy=dataclasses.replace(
                retry_policy,
                retryable_statuses=NEWSAPI_RETRY_POLICY.retryable_statuses,
            ),
        )
    else:
        logger.warning("NEWS_API_KEY is not set; feeds can only be served from cache")

    def fetch_articles(source_key: str) -> List[Article]:
        if news_client is None:
            raise FatalAPIError("NewsAPI key is not configured", kind="unauthorized")
        return news_client.fetch_source_articles(source_key)

    refresh_config = RefreshConfig(
        enabled=config.refresh_enabled,
        stale_threshold=config.refresh_stale_threshold_seconds,
        priority_threshold=config.refresh_priority_threshold_seconds,
        max_concurrent_refresh=config.refresh_max_concurrent,
        refresh_interval=config.refresh_interval_seconds,
    )
    scheduler = BackgroundRefreshScheduler(cache, config=refresh_config)
    feeds = FeedService(cache, fetch_articles, scheduler=scheduler)
    monitor = RequestMonitor(
        governor,
        news_client=news_client,
        analysis_interval=config.monitor_analysis_interval_seconds,
    )

    return Services(
        cache=cache,
        governor=governor,
        scheduler=scheduler,
        feeds=feeds,
        monitor=monitor,
        news_client=news_client,
        refresh_config=refresh_config,
    )


def _error_status(error: RequestError) -> int:
    """HTTP status for an upstream request failure."""
    if isinstance(error, RequestTimeoutError):
        return 504
    if isinstance(error, (TransientAPIError, QueueClearedError)):
        return 503
    return 502


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API around a Services bundle (built from settings if omitted)."""
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.scheduler.initialize(services.feeds.refresh, services.refresh_config)
        yield
        services.scheduler.shutdown()
        services.governor.destroy()

    app = FastAPI(
        title=f"{APP_NAME} ({APP_STAGE})",
        description="Request governance and feed caching for NewsAPI",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(RequestError)
    async def request_error_handler(request: Request, exc: RequestError):
        return JSONResponse(status_code=_error_status(exc), content=exc.to_dict())

    @app.exception_handler(RefreshNotInitializedError)
    async def refresh_not_initialized_handler(request: Request, exc: RefreshNotInitializedError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        health = services.monitor.get_dashboard().health
        return {"status": "ok", "api": health.status, "mode": "live"}

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "stage": APP_STAGE,
            "full": f"{APP_NAME} {APP_VERSION} ({APP_STAGE})"
        }

    # =========================================================================
    # CACHE
    # =========================================================================

    @app.get("/cache/stats")
    def cache_stats():
        """Get cache statistics."""
        return {
            **services.cache.stats().to_dict(),
            "analytics": services.cache.analytics(),
        }

    @app.delete("/cache")
    def clear_cache():
        return {"cleared": services.cache.clear()}

    @app.get("/feeds/{source}")
    def get_feed(source: str, force_refresh: bool = Query(False, description="Bypass the cache")):
        """
        Articles for one source, cache first.

        Stale batches are served immediately and refreshed in the background.
        """
        articles, meta = services.feeds.get_articles(source, force_refresh=force_refresh)
        return {
            "source": source,
            "count": len(articles),
            "articles": articles,
            "cacheAge": format_cache_age(meta.age_seconds or 0),
            "meta": meta.to_dict(),
        }

    # =========================================================================
    # MONITORING
    # =========================================================================

    @app.get("/monitor/dashboard")
    def monitor_dashboard():
        return services.monitor.get_dashboard().to_dict()

    @app.get("/monitor/report", response_class=PlainTextResponse)
    def monitor_report():
        """Markdown monitoring report."""
        return services.monitor.generate_report()

    @app.get("/monitor/export")
    def monitor_export():
        return services.monitor.export_analytics()

    @app.post("/monitor/reset")
    def monitor_reset():
        services.monitor.reset()
        return {"status": "reset"}

    # =========================================================================
    # BACKGROUND REFRESH
    # =========================================================================

    @app.get("/refresh/status")
    def refresh_status():
        return {
            **services.scheduler.get_status(),
            "config": dataclasses.asdict(services.scheduler.get_config()),
        }

    @app.patch("/refresh/config")
    def update_refresh_config(update: RefreshConfigUpdate):
        config = services.scheduler.update_config(**update.model_dump(exclude_none=True))
        return dataclasses.asdict(config)

    @app.post("/refresh/{source}")
    def force_refresh(source: str):
        """Refresh one source now, with a single attempt."""
        return {"source": source, "refreshed": services.scheduler.force_refresh(source)}

    # =========================================================================
    # GOVERNOR
    # =========================================================================

    @app.get("/governor/queue")
    def governor_queue():
        return {
            **services.governor.get_queue_status(),
            "rateLimits": dataclasses.asdict(services.governor.rate_limits),
            "remaining": services.governor.remaining_capacity(),
        }

    @app.patch("/governor/rate-limits")
    def update_rate_limits(update: RateLimitUpdate):
        """Override the window ceilings, e.g. after a plan upgrade."""
        config = services.governor.update_rate_limits(**update.model_dump(exclude_none=True))
        return dataclasses.asdict(config)

    @app.delete("/governor/queue")
    def clear_governor_queue():
        return {"cleared": services.governor.clear_queue()}

    return app


app = create_app()
