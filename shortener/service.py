from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shortener.cache import (
    LinkCache,
    cache_key_for_code,
    recent_urls_key,
    user_listing_keys,
    user_topics_key,
)
from shortener.config import Settings
from shortener.errors import AliasTaken, InvalidAlias, NotFound
from shortener.models import ShortLink
from shortener.schemas import Pagination, RecentUrl, RecentUrlsResponse

logger = logging.getLogger(__name__)

# URL-safe: A-Z a-z 0-9 - _
ALIAS_ALPHABET = string.ascii_letters + string.digits + "-_"
MAX_GENERATE_TRIES = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def validate_alias(alias: str) -> None:
    """
    Allow only URL-safe alias characters.
    """
    if any(ch not in ALIAS_ALPHABET for ch in alias):
        raise InvalidAlias("Custom alias may only contain A-Z, a-z, 0-9, - and _")


def generate_code(length: int) -> str:
    return "".join(secrets.choice(ALIAS_ALPHABET) for _ in range(length))


def compute_expires_at(expires_in_days: int | None, default_days: int) -> datetime | None:
    days = expires_in_days if expires_in_days is not None else default_days
    if days <= 0:
        return None
    return utcnow() + timedelta(days=days)


def is_expired(expires_at: datetime | None) -> bool:
    expires_at = as_utc(expires_at)
    return expires_at is not None and expires_at <= utcnow()


def redis_ttl_seconds(expires_at: datetime | None, default_ttl: int) -> int:
    """
    Never cache a link past its expiry; otherwise use the default TTL (24h).
    """
    expires_at = as_utc(expires_at)
    if expires_at is None:
        return default_ttl
    seconds = int((expires_at - utcnow()).total_seconds())
    return max(1, min(seconds, default_ttl))


def build_short_url(settings: Settings, code: str) -> str:
    return f"{settings.base_url.rstrip('/')}/api/shorten/{code}"


def link_payload(row: ShortLink) -> dict[str, Any]:
    """JSON-safe form of a link, as kept in the cache."""
    expires_at = as_utc(row.expires_at)
    return {
        "code": row.code,
        "long_url": row.long_url,
        "owner_id": row.owner_id,
        "topic": row.topic,
        "click_count": row.click_count,
        "created_at": as_utc(row.created_at).isoformat(),
        "expires_at": expires_at.isoformat() if expires_at else None,
    }


def _try_insert(db: Session, row: ShortLink) -> bool:
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race on the primary key.
        db.rollback()
        return False
    db.refresh(row)
    return True


def shorten_url(
    db: Session,
    cache: LinkCache,
    settings: Settings,
    owner_id: int,
    long_url: str,
    custom_alias: str | None,
    topic: str | None,
    expires_in_days: int | None,
) -> ShortLink:
    """
    Creates a short code for a given long URL.
    Writes to the database (source of truth), warms the cache and drops the
    owner's cached listings.
    """
    if custom_alias:
        validate_alias(custom_alias)

    created = utcnow()
    expires_at = compute_expires_at(expires_in_days, settings.default_expiry_days)

    def new_row(code: str) -> ShortLink:
        return ShortLink(
            code=code,
            long_url=long_url,
            topic=topic,
            owner_id=owner_id,
            click_count=0,
            created_at=created,
            expires_at=expires_at,
        )

    row: ShortLink | None = None

    # Custom alias path
    if custom_alias:
        if db.get(ShortLink, custom_alias) is not None:
            raise AliasTaken()
        row = new_row(custom_alias)
        if not _try_insert(db, row):
            raise AliasTaken()

    # Generated code path with collision retries
    else:
        for _ in range(MAX_GENERATE_TRIES):
            code = generate_code(settings.code_length)
            if db.get(ShortLink, code) is not None:
                continue
            candidate = new_row(code)
            if _try_insert(db, candidate):
                row = candidate
                break

    if row is None:
        raise RuntimeError("Failed to generate a unique alias")

    logger.info("user %s created alias %s", owner_id, row.code)

    cache.set_json(
        cache_key_for_code(row.code),
        link_payload(row),
        redis_ttl_seconds(row.expires_at, settings.link_cache_ttl_seconds),
    )
    cache.invalidate(*user_listing_keys(owner_id))
    return row


def resolve_link(db: Session, cache: LinkCache, settings: Settings, code: str) -> dict[str, Any]:
    """
    Redirect hot path:
      1) cache lookup
      2) database fallback
      3) cache warm-up
    """
    payload = cache.get_json(cache_key_for_code(code))
    if payload is None:
        row = db.get(ShortLink, code)
        if row is None:
            raise NotFound("Short URL not found")
        payload = link_payload(row)
        if not is_expired(row.expires_at):
            cache.set_json(
                cache_key_for_code(code),
                payload,
                redis_ttl_seconds(row.expires_at, settings.link_cache_ttl_seconds),
            )

    expires_at = payload.get("expires_at")
    if expires_at and is_expired(datetime.fromisoformat(expires_at)):
        raise NotFound("Short URL has expired")
    return payload


def record_click(db: Session, code: str) -> int:
    """
    Atomically bumps the stored click count and returns the new value.
    """
    stmt = (
        update(ShortLink)
        .where(ShortLink.code == code)
        .values(click_count=ShortLink.click_count + 1)
        .returning(ShortLink.click_count)
        .execution_options(synchronize_session=False)
    )
    clicks = db.execute(stmt).scalar_one_or_none()
    db.commit()
    if clicks is None:
        raise NotFound("Short URL not found")
    return clicks


def list_recent_links(
    db: Session,
    cache: LinkCache,
    settings: Settings,
    owner_id: int,
    topic: str | None,
    sort: str,
    page: int,
    limit: int,
) -> RecentUrlsResponse:
    key = recent_urls_key(owner_id, topic, sort, page, limit)
    cached = cache.get_json(key)
    if cached is not None:
        return RecentUrlsResponse.model_validate(cached)

    filters = [ShortLink.owner_id == owner_id]
    if topic:
        filters.append(ShortLink.topic == topic)

    total = db.scalar(select(func.count()).select_from(ShortLink).where(*filters)) or 0
    order = ShortLink.created_at.asc() if sort == "asc" else ShortLink.created_at.desc()
    rows = db.scalars(
        select(ShortLink)
        .where(*filters)
        .order_by(order, ShortLink.code)
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    result = RecentUrlsResponse(
        data=[
            RecentUrl(
                alias=row.code,
                short_url=build_short_url(settings, row.code),
                long_url=row.long_url,
                topic=row.topic,
                clicks=row.click_count,
                created_at=as_utc(row.created_at),
            )
            for row in rows
        ],
        pagination=Pagination(total=total, page=page, limit=limit, has_next=page * limit < total),
    )
    cache.set_json(key, result.model_dump(mode="json", by_alias=True), settings.listing_cache_ttl_seconds)
    return result


def list_topics(db: Session, cache: LinkCache, settings: Settings, owner_id: int) -> list[str]:
    key = user_topics_key(owner_id)
    cached = cache.get_json(key)
    if cached is not None:
        return cached

    topics = list(
        db.scalars(
            select(ShortLink.topic)
            .where(ShortLink.owner_id == owner_id, ShortLink.topic.is_not(None))
            .distinct()
            .order_by(ShortLink.topic)
        ).all()
    )
    cache.set_json(key, topics, settings.listing_cache_ttl_seconds)
    return topics


def refresh_link_cache(cache: LinkCache, settings: Settings, payload: dict[str, Any]) -> None:
    expires_at = payload.get("expires_at")
    cache.set_json(
        cache_key_for_code(payload["code"]),
        payload,
        redis_ttl_seconds(datetime.fromisoformat(expires_at) if expires_at else None, settings.link_cache_ttl_seconds),
    )
