from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.responses import RedirectResponse
from redis import Redis
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from shortener import analytics
from shortener.auth import current_user_id
from shortener.auth_routes import router as auth_router
from shortener.cache import LinkCache
from shortener.config import Settings, settings as default_settings
from shortener.db import Base, get_db, make_engine, make_session_factory
from shortener.errors import install_error_handlers
from shortener.google import GoogleOAuthClient
from shortener.ratelimit import enforce_rate_limit
from shortener.schemas import (
    LinkAnalyticsResponse,
    OverallAnalyticsResponse,
    RecentUrlsResponse,
    ShortenRequest,
    ShortenResponse,
    TopicAnalyticsResponse,
)
from shortener.service import (
    as_utc,
    build_short_url,
    list_recent_links,
    list_topics,
    record_click,
    refresh_link_cache,
    resolve_link,
    shorten_url,
    utcnow,
)

logger = logging.getLogger(__name__)

api = APIRouter(prefix="/api", tags=["urls"])


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_cache(request: Request) -> LinkCache:
    return request.app.state.cache


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@api.post("/shorten", response_model=ShortenResponse, status_code=201, dependencies=[Depends(enforce_rate_limit)])
def create_short_url(
    payload: ShortenRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: LinkCache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> ShortenResponse:
    row = shorten_url(
        db=db,
        cache=cache,
        settings=settings,
        owner_id=user_id,
        long_url=str(payload.long_url),
        custom_alias=payload.custom_alias,
        topic=payload.topic,
        expires_in_days=payload.expires_in_days,
    )

    return ShortenResponse(
        alias=row.code,
        short_url=build_short_url(settings, row.code),
        topic=row.topic,
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
    )


@api.get("/shorten/{alias}")
def redirect(
    alias: str,
    request: Request,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: LinkCache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """
    Redirect hot path:
    - Resolve the link via cache -> database fallback
    - Atomic click increment, cached payload refreshed
    - Analytics recorded after the response is sent
    """
    link = resolve_link(db, cache, settings, alias)
    link["click_count"] = record_click(db, alias)
    refresh_link_cache(cache, settings, link)

    background_tasks.add_task(
        analytics.record_event,
        request.app.state.session_factory,
        cache,
        alias,
        client_ip(request),
        user_id,
        request.headers.get("user-agent"),
        utcnow(),
    )
    return RedirectResponse(url=link["long_url"], status_code=302)


@api.get("/analytics/overall", response_model=OverallAnalyticsResponse)
def overall_analytics(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: LinkCache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> OverallAnalyticsResponse:
    return analytics.overall_analytics(db, cache, settings, user_id)


@api.get("/analytics/topic/{topic}", response_model=TopicAnalyticsResponse)
def topic_analytics(
    topic: str,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: LinkCache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> TopicAnalyticsResponse:
    return analytics.topic_analytics(db, cache, settings, user_id, topic)


@api.get("/analytics/{alias}", response_model=LinkAnalyticsResponse, dependencies=[Depends(current_user_id)])
def url_analytics(
    alias: str,
    db: Session = Depends(get_db),
    cache: LinkCache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> LinkAnalyticsResponse:
    return analytics.link_analytics(db, cache, settings, alias)


@api.get("/topics", response_model=list[str])
def topics(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: LinkCache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> list[str]:
    return list_topics(db, cache, settings, user_id)


@api.get("/recent-urls", response_model=RecentUrlsResponse)
def recent_urls(
    topic: str | None = None,
    sort_by: Literal["asc", "desc"] = Query("desc", alias="sortBy"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: LinkCache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> RecentUrlsResponse:
    return list_recent_links(db, cache, settings, user_id, topic, sort_by, page, limit)


def wait_for_database(engine: Engine, max_attempts: int = 30, sleep_seconds: float = 1) -> None:
    """
    Wait for the database to be reachable before creating tables.
    This avoids 'connection refused' when containers start in parallel.
    """
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return
        except Exception as e:
            last_err = e
            logger.info("database not ready yet: %s", e)
            time.sleep(sleep_seconds)

    raise RuntimeError(f"Database not reachable after {max_attempts} attempts") from last_err


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    redis_client: Redis | None = None,
    google_client: GoogleOAuthClient | None = None,
) -> FastAPI:
    """
    Composition root: owns the engine, Redis client and OAuth client.
    Pass your own instances to override them (tests do).
    Run with: uvicorn --factory shortener.main:create_app
    """
    settings = settings or default_settings
    configure_logging(settings.log_level)

    engine = engine or make_engine(settings.database_url)
    if redis_client is None:
        redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    google_client = google_client or GoogleOAuthClient(
        settings.google_client_id,
        settings.google_client_secret,
        settings.google_redirect_uri,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        wait_for_database(engine)
        # TODO: move schema management to Alembic migrations
        Base.metadata.create_all(bind=engine)
        logger.info("url shortener started (cache %s)", "on" if settings.cache_enabled else "off")
        yield
        redis_client.close()
        google_client.close()
        engine.dispose()

    app = FastAPI(title="URL Shortener", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.redis = redis_client
    # The rate limiter still uses Redis when caching is switched off.
    app.state.cache = LinkCache(redis_client if settings.cache_enabled else None)
    app.state.google = google_client

    install_error_handlers(app)
    app.include_router(auth_router)
    app.include_router(api)

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "ok",
            "service": "url-shortener",
            "base_url": settings.base_url,
        }

    return app
