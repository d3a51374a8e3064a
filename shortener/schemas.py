from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys, as the frontend expects."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ShortenRequest(CamelModel):
    long_url: HttpUrl
    custom_alias: str | None = Field(default=None, min_length=3, max_length=32)
    topic: str | None = Field(default=None, min_length=1, max_length=64)
    expires_in_days: int | None = Field(default=None, ge=1, le=365)

    @field_validator("custom_alias", mode="before")
    @classmethod
    def blank_alias_means_generated(cls, value):
        if value == "":
            return None
        return value


class ShortenResponse(CamelModel):
    alias: str
    short_url: str
    topic: str | None
    created_at: datetime
    expires_at: datetime | None


class DateCount(CamelModel):
    date: str
    click_count: int


class OsStat(CamelModel):
    os_name: str
    unique_clicks: int
    unique_users: int


class DeviceStat(CamelModel):
    device_name: str
    unique_clicks: int
    unique_users: int


class LinkAnalyticsResponse(CamelModel):
    total_clicks: int = 0
    unique_users: int = 0
    clicks_by_date: list[DateCount] = []
    os_type_stats: list[OsStat] = []
    device_type_stats: list[DeviceStat] = []


class TopicUrlStat(CamelModel):
    alias: str
    short_url: str
    total_clicks: int
    unique_users: int


class TopicAnalyticsResponse(CamelModel):
    total_clicks: int
    unique_users: int
    clicks_by_date: list[DateCount]
    urls: list[TopicUrlStat]


class OverallAnalyticsResponse(CamelModel):
    total_urls: int = 0
    total_clicks: int = 0
    unique_users: int = 0
    clicks_by_date: list[DateCount] = []
    os_type_stats: list[OsStat] = []
    device_type_stats: list[DeviceStat] = []


class RecentUrl(CamelModel):
    alias: str
    short_url: str
    long_url: str
    topic: str | None
    clicks: int
    created_at: datetime


class Pagination(CamelModel):
    total: int
    page: int
    limit: int
    has_next: bool


class RecentUrlsResponse(CamelModel):
    data: list[RecentUrl]
    pagination: Pagination


class UserOut(CamelModel):
    id: int
    email: str
    name: str
    picture: str | None
    last_login_at: datetime


class UserEnvelope(BaseModel):
    user: UserOut


class MessageResponse(BaseModel):
    message: str
