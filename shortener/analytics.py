"""
Click analytics.

Write side: record_event() folds one redirect into the per-link aggregate
(total clicks, unique visitor set, 7-day daily window, OS and device
breakdowns). It runs as a background task after the redirect response and
never raises. Rows are written with INSERT ... ON CONFLICT, so concurrent
first clicks on one link both land.

Read side: per-link, per-topic and per-user snapshots, cached in Redis.
Unique users are always reported as a count; across several links it is the
size of the union of their visitor sets, per OS/device bucket as well.
Breakdowns are cumulative, only clicks_by_date is limited to the window.
"""
from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session
from user_agents import parse as parse_ua

from shortener.cache import (
    LinkCache,
    analytics_key,
    overall_analytics_key,
    topic_analytics_key,
    user_listing_keys,
)
from shortener.config import Settings
from shortener.errors import NotFound
from shortener.models import (
    AnalyticsVisitor,
    ClickBreakdown,
    DailyClicks,
    LinkAnalytics,
    ShortLink,
)
from shortener.schemas import (
    DateCount,
    DeviceStat,
    LinkAnalyticsResponse,
    OsStat,
    OverallAnalyticsResponse,
    TopicAnalyticsResponse,
    TopicUrlStat,
)
from shortener.service import build_short_url

logger = logging.getLogger(__name__)

WINDOW_DAYS = 7
UNKNOWN = "Unknown"

OS = "os"
DEVICE = "device"


@dataclass(frozen=True)
class ParsedAgent:
    os_name: str
    is_mobile: bool
    is_tablet: bool


def parse_user_agent(user_agent: str | None) -> ParsedAgent:
    if not user_agent:
        return ParsedAgent(os_name=UNKNOWN, is_mobile=False, is_tablet=False)
    ua = parse_ua(user_agent)
    os_name = ua.os.family
    if not os_name or os_name == "Other":
        os_name = UNKNOWN
    return ParsedAgent(os_name=os_name[:64], is_mobile=ua.is_mobile, is_tablet=ua.is_tablet)


def device_type(agent: ParsedAgent) -> str:
    if agent.is_mobile:
        return "Mobile"
    if agent.is_tablet:
        return "Tablet"
    return "Desktop"


def visitor_identity(user_id: int | None, client_ip: str | None) -> str:
    """
    Authenticated user id when there is one, else a hash of the client IP.
    """
    if user_id is not None:
        return f"user:{user_id}"
    digest = hashlib.sha256((client_ip or UNKNOWN).encode("utf-8")).hexdigest()
    return f"ip:{digest[:32]}"


def window_start(today: date) -> date:
    return today - timedelta(days=WINDOW_DAYS)


# ---- write side ----

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def _insert(db: Session, model):
    """Dialect insert, so first clicks can use ON CONFLICT instead of read-then-add."""
    return _INSERTS[db.get_bind().dialect.name](model)


def _bump_aggregate(db: Session, code: str, clicked_at: datetime) -> None:
    stmt = _insert(db, LinkAnalytics).values(code=code, total_clicks=1, last_clicked_at=clicked_at)
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=[LinkAnalytics.code],
            set_={
                "total_clicks": LinkAnalytics.total_clicks + 1,
                "last_clicked_at": stmt.excluded.last_clicked_at,
            },
        )
    )


def _bump_daily(db: Session, code: str, day: date) -> None:
    stmt = _insert(db, DailyClicks).values(code=code, day=day, click_count=1)
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=[DailyClicks.code, DailyClicks.day],
            set_={"click_count": DailyClicks.click_count + 1},
        )
    )


def _bump_breakdown(db: Session, code: str, dimension: str, name: str) -> None:
    stmt = _insert(db, ClickBreakdown).values(code=code, dimension=dimension, name=name, unique_clicks=1)
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=[ClickBreakdown.code, ClickBreakdown.dimension, ClickBreakdown.name],
            set_={"unique_clicks": ClickBreakdown.unique_clicks + 1},
        )
    )


def record_event(
    session_factory: Callable[[], Session],
    cache: LinkCache,
    code: str,
    client_ip: str | None,
    user_id: int | None,
    user_agent: str | None,
    clicked_at: datetime,
) -> None:
    """
    Best-effort: any failure is logged and dropped, the redirect never sees it.
    Dates are bucketed in the server's local time zone.
    """
    try:
        agent = parse_user_agent(user_agent)
        device = device_type(agent)
        visitor = visitor_identity(user_id, client_ip)
        today = clicked_at.astimezone().date()

        with session_factory() as db:
            link = db.get(ShortLink, code)
            if link is None:
                logger.warning("analytics skipped, alias %s no longer exists", code)
                return
            owner_id = link.owner_id

            _bump_aggregate(db, code, clicked_at)
            db.execute(
                _insert(db, AnalyticsVisitor)
                .values(code=code, visitor=visitor, os_name=agent.os_name, device=device)
                .on_conflict_do_nothing()
            )

            _bump_daily(db, code, today)
            db.execute(
                delete(DailyClicks)
                .where(DailyClicks.code == code, DailyClicks.day < window_start(today))
                .execution_options(synchronize_session=False)
            )

            _bump_breakdown(db, code, OS, agent.os_name)
            _bump_breakdown(db, code, DEVICE, device)
            db.commit()

        cache.invalidate(analytics_key(code), *user_listing_keys(owner_id))
        logger.debug("click on %s recorded (os=%s device=%s)", code, agent.os_name, device)
    except Exception:
        logger.exception("Analytics tracking failed for %s", code)


# ---- read side ----


def _clicks_by_date(db: Session, codes: Sequence[str], today: date) -> list[DateCount]:
    rows = db.execute(
        select(DailyClicks.day, func.sum(DailyClicks.click_count))
        .where(DailyClicks.code.in_(codes), DailyClicks.day >= window_start(today))
        .group_by(DailyClicks.day)
        .order_by(DailyClicks.day)
    ).all()
    return [DateCount(date=day.isoformat(), click_count=int(total)) for day, total in rows]


def _bucket_visitors(db: Session, codes: Sequence[str], dimension: str, column) -> dict[tuple[str, str], int]:
    # A visitor seen on several links counts once per bucket.
    rows = db.execute(
        select(column, func.count(func.distinct(AnalyticsVisitor.visitor)))
        .where(AnalyticsVisitor.code.in_(codes))
        .group_by(column)
    ).all()
    return {(dimension, name): count for name, count in rows}


def _breakdowns(db: Session, codes: Sequence[str]) -> tuple[list[OsStat], list[DeviceStat]]:
    clicks = db.execute(
        select(ClickBreakdown.dimension, ClickBreakdown.name, func.sum(ClickBreakdown.unique_clicks))
        .where(ClickBreakdown.code.in_(codes))
        .group_by(ClickBreakdown.dimension, ClickBreakdown.name)
        .order_by(ClickBreakdown.dimension, ClickBreakdown.name)
    ).all()
    users = _bucket_visitors(db, codes, OS, AnalyticsVisitor.os_name)
    users.update(_bucket_visitors(db, codes, DEVICE, AnalyticsVisitor.device))

    os_stats: list[OsStat] = []
    device_stats: list[DeviceStat] = []
    for dimension, name, total in clicks:
        unique_users = int(users.get((dimension, name), 0))
        if dimension == OS:
            os_stats.append(OsStat(os_name=name, unique_clicks=int(total), unique_users=unique_users))
        elif dimension == DEVICE:
            device_stats.append(DeviceStat(device_name=name, unique_clicks=int(total), unique_users=unique_users))
    return os_stats, device_stats


def _unique_visitors(db: Session, codes: Sequence[str]) -> int:
    return db.scalar(
        select(func.count(func.distinct(AnalyticsVisitor.visitor))).where(AnalyticsVisitor.code.in_(codes))
    ) or 0


def link_analytics(
    db: Session,
    cache: LinkCache,
    settings: Settings,
    code: str,
    today: date | None = None,
) -> LinkAnalyticsResponse:
    key = analytics_key(code)
    cached = cache.get_json(key)
    if cached is not None:
        return LinkAnalyticsResponse.model_validate(cached)

    if db.get(ShortLink, code) is None:
        raise NotFound("Short URL not found")

    aggregate = db.get(LinkAnalytics, code)
    if aggregate is None:
        empty = LinkAnalyticsResponse()
        # Short TTL so fresh links do not keep hitting the database.
        cache.set_json(key, empty.model_dump(mode="json", by_alias=True), settings.empty_analytics_cache_ttl_seconds)
        return empty

    today = today or date.today()
    os_stats, device_stats = _breakdowns(db, [code])
    result = LinkAnalyticsResponse(
        total_clicks=aggregate.total_clicks,
        unique_users=_unique_visitors(db, [code]),
        clicks_by_date=_clicks_by_date(db, [code], today),
        os_type_stats=os_stats,
        device_type_stats=device_stats,
    )
    cache.set_json(key, result.model_dump(mode="json", by_alias=True), settings.analytics_cache_ttl_seconds)
    return result


def topic_analytics(
    db: Session,
    cache: LinkCache,
    settings: Settings,
    owner_id: int,
    topic: str,
    today: date | None = None,
) -> TopicAnalyticsResponse:
    key = topic_analytics_key(owner_id, topic)
    cached = cache.get_json(key)
    if cached is not None:
        return TopicAnalyticsResponse.model_validate(cached)

    codes = list(
        db.scalars(
            select(ShortLink.code)
            .where(ShortLink.owner_id == owner_id, ShortLink.topic == topic)
            .order_by(ShortLink.created_at, ShortLink.code)
        ).all()
    )
    if not codes:
        raise NotFound("No URLs found under this topic")

    totals = dict(
        db.execute(select(LinkAnalytics.code, LinkAnalytics.total_clicks).where(LinkAnalytics.code.in_(codes))).all()
    )
    per_link_users = dict(
        db.execute(
            select(AnalyticsVisitor.code, func.count())
            .where(AnalyticsVisitor.code.in_(codes))
            .group_by(AnalyticsVisitor.code)
        ).all()
    )

    today = today or date.today()
    result = TopicAnalyticsResponse(
        total_clicks=sum(totals.values()),
        unique_users=_unique_visitors(db, codes),
        clicks_by_date=_clicks_by_date(db, codes, today),
        urls=[
            TopicUrlStat(
                alias=code,
                short_url=build_short_url(settings, code),
                total_clicks=totals.get(code, 0),
                unique_users=per_link_users.get(code, 0),
            )
            for code in codes
        ],
    )
    cache.set_json(key, result.model_dump(mode="json", by_alias=True), settings.analytics_cache_ttl_seconds)
    return result


def overall_analytics(
    db: Session,
    cache: LinkCache,
    settings: Settings,
    owner_id: int,
    today: date | None = None,
) -> OverallAnalyticsResponse:
    key = overall_analytics_key(owner_id)
    cached = cache.get_json(key)
    if cached is not None:
        return OverallAnalyticsResponse.model_validate(cached)

    codes = list(db.scalars(select(ShortLink.code).where(ShortLink.owner_id == owner_id)).all())
    if not codes:
        return OverallAnalyticsResponse()

    today = today or date.today()
    total_clicks = db.scalar(
        select(func.coalesce(func.sum(LinkAnalytics.total_clicks), 0)).where(LinkAnalytics.code.in_(codes))
    )
    os_stats, device_stats = _breakdowns(db, codes)
    result = OverallAnalyticsResponse(
        total_urls=len(codes),
        total_clicks=int(total_clicks or 0),
        unique_users=_unique_visitors(db, codes),
        clicks_by_date=_clicks_by_date(db, codes, today),
        os_type_stats=os_stats,
        device_type_stats=device_stats,
    )
    cache.set_json(key, result.model_dump(mode="json", by_alias=True), settings.analytics_cache_ttl_seconds)
    return result
