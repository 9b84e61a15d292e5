"""Users and blog listings served through a short-lived StatsCache.

A listing's cache key is its normalized query string, so the aggregator can
rebuild the query from the key alone and identical requests share one entry.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode

from fastapi.encoders import jsonable_encoder

from app.analytics import with_default
from app.models import (
    BlogPage,
    DashboardSummary,
    MedicationsPage,
    Pagination,
    UserActivityItem,
    UserActivityPage,
    UserAnalytics,
    UsersPage,
)
from app.supabase_client import QueryResult, SupabaseClient, SupabaseNotConfiguredError

logger = logging.getLogger("sugar.listings")

USER_COLUMNS = (
    "id,user_id,name,email,phone,diabetes_type,diabetes_status,status,"
    "onboarding_completed,created_at,updated_at"
)
USER_SORT_COLUMNS = frozenset({"created_at", "updated_at", "name", "email", "status", "diabetes_type"})
ARTICLE_COLUMNS = "id,title,content,author,is_published,is_featured,created_at,updated_at,blog_category_id"
VIDEO_COLUMNS = (
    "id,title,description,video_url,thumbnail_url,duration,is_published,is_featured,"
    "created_at,updated_at,category_id"
)
MEDICATION_COLUMNS = "*"
ACTIVITY_SOURCES = ("glucose_readings", "medication_history")


def _parse_bool(raw: str) -> Optional[bool]:
    if raw == "":
        return None
    return raw.strip().lower() == "true"


@dataclass(frozen=True)
class UsersQuery:
    page: int = 1
    limit: int = 20
    search: str = ""
    status: str = ""
    diabetes_type: str = ""
    onboarding_completed: Optional[bool] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"

    def __post_init__(self) -> None:
        if self.page < 1:
            object.__setattr__(self, "page", 1)
        if self.limit < 1:
            object.__setattr__(self, "limit", 1)
        if self.sort_by not in USER_SORT_COLUMNS:
            object.__setattr__(self, "sort_by", "created_at")
        if self.sort_order not in {"asc", "desc"}:
            object.__setattr__(self, "sort_order", "desc")

    def cache_key(self) -> str:
        values = asdict(self)
        flag = values["onboarding_completed"]
        values["onboarding_completed"] = "" if flag is None else str(flag).lower()
        return "users?" + urlencode(sorted((name, str(value)) for name, value in values.items()))

    @classmethod
    def from_cache_key(cls, key: str) -> "UsersQuery":
        _, _, query = key.partition("?")
        raw = dict(parse_qsl(query, keep_blank_values=True))
        return cls(
            page=int(raw.get("page") or 1),
            limit=int(raw.get("limit") or 20),
            search=raw.get("search", ""),
            status=raw.get("status", ""),
            diabetes_type=raw.get("diabetes_type", ""),
            onboarding_completed=_parse_bool(raw.get("onboarding_completed", "")),
            sort_by=raw.get("sort_by", "created_at"),
            sort_order=raw.get("sort_order", "desc"),
        )


@dataclass(frozen=True)
class BlogQuery:
    page: int = 1
    limit: int = 20

    def cache_key(self) -> str:
        return f"blog:{max(self.page, 1)}:{max(self.limit, 1)}"

    @classmethod
    def from_cache_key(cls, key: str) -> "BlogQuery":
        _, page, limit = key.split(":")
        return cls(page=int(page), limit=int(limit))


@dataclass(frozen=True)
class MedicationsQuery:
    page: int = 1
    limit: int = 20
    user_id: str = ""
    status: str = ""
    search: str = ""

    def __post_init__(self) -> None:
        if self.page < 1:
            object.__setattr__(self, "page", 1)
        if self.limit < 1:
            object.__setattr__(self, "limit", 1)

    def cache_key(self) -> str:
        return "medications?" + urlencode(sorted((name, str(value)) for name, value in asdict(self).items()))

    @classmethod
    def from_cache_key(cls, key: str) -> "MedicationsQuery":
        _, _, query = key.partition("?")
        raw = dict(parse_qsl(query, keep_blank_values=True))
        return cls(
            page=int(raw.get("page") or 1),
            limit=int(raw.get("limit") or 20),
            user_id=raw.get("user_id", ""),
            status=raw.get("status", ""),
            search=raw.get("search", ""),
        )


def users_fallback(key: str) -> dict[str, Any]:
    query = UsersQuery.from_cache_key(key)
    return jsonable_encoder(
        UsersPage(pagination=Pagination(page=query.page, limit=query.limit, total=0, total_pages=0))
    )


def blog_fallback(key: str) -> dict[str, Any]:
    query = BlogQuery.from_cache_key(key)
    return jsonable_encoder(BlogPage(pagination=Pagination(page=query.page, limit=query.limit, total=0, total_pages=0)))


def medications_fallback(key: str) -> dict[str, Any]:
    query = MedicationsQuery.from_cache_key(key)
    return jsonable_encoder(
        MedicationsPage(pagination=Pagination(page=query.page, limit=query.limit, total=0, total_pages=0))
    )


class UsersListing:
    def __init__(self, client: Optional[SupabaseClient]) -> None:
        self._client = client

    async def __call__(self, key: str) -> dict[str, Any]:
        if self._client is None:
            raise SupabaseNotConfiguredError()
        query = UsersQuery.from_cache_key(key)
        offset = (query.page - 1) * query.limit

        table = self._client.table("user_profiles").select(USER_COLUMNS)
        if query.search:
            table = table.search(["name", "email"], query.search)
        if query.status:
            table = table.eq("status", query.status)
        if query.diabetes_type:
            table = table.eq("diabetes_type", query.diabetes_type)
        if query.onboarding_completed is not None:
            table = table.eq("onboarding_completed", query.onboarding_completed)
        table = table.order(query.sort_by, desc=query.sort_order == "desc").range(offset, offset + query.limit - 1)

        result = await table.execute(count=True)
        total = result.count or 0
        logger.info("Loaded users page=%d rows=%d total=%d", query.page, len(result.rows), total)
        page = UsersPage(
            users=result.rows,
            pagination=Pagination(
                page=query.page,
                limit=query.limit,
                total=total,
                total_pages=math.ceil(total / query.limit),
            ),
        )
        return jsonable_encoder(page)


class BlogListing:
    def __init__(self, client: Optional[SupabaseClient]) -> None:
        self._client = client

    async def __call__(self, key: str) -> dict[str, Any]:
        client = self._client
        if client is None:
            raise SupabaseNotConfiguredError()
        query = BlogQuery.from_cache_key(key)
        offset = (query.page - 1) * query.limit
        end = offset + query.limit - 1

        articles, videos, categories = await asyncio.gather(
            client.table("articles").select(ARTICLE_COLUMNS).order("created_at", desc=True).range(offset, end).execute(),
            client.table("videos").select(VIDEO_COLUMNS).order("created_at", desc=True).range(offset, end).execute(),
            # Categories are optional decoration; a missing table must not fail the page.
            with_default(
                "blog_categories",
                client.table("education_categories").select("id,name,description").order("name").execute(),
                QueryResult,
            ),
        )

        content = [{**row, "type": "article", "display_type": "Article"} for row in articles.rows]
        content.extend({**row, "type": "video", "display_type": "Video"} for row in videos.rows)
        content.sort(key=lambda item: str(item.get("created_at") or ""), reverse=True)
        logger.info("Loaded blog page=%d articles=%d videos=%d", query.page, len(articles.rows), len(videos.rows))

        page = BlogPage(
            content=content,
            categories=categories.rows,
            pagination=Pagination(
                page=query.page,
                limit=query.limit,
                total=len(content),
                total_pages=math.ceil(len(content) / query.limit),
            ),
        )
        return jsonable_encoder(page)


class MedicationsListing:
    def __init__(self, client: Optional[SupabaseClient]) -> None:
        self._client = client

    async def __call__(self, key: str) -> dict[str, Any]:
        if self._client is None:
            raise SupabaseNotConfiguredError()
        query = MedicationsQuery.from_cache_key(key)
        offset = (query.page - 1) * query.limit

        table = self._client.table("medications").select(MEDICATION_COLUMNS)
        if query.user_id:
            table = table.eq("user_id", query.user_id)
        if query.status:
            table = table.eq("status", query.status)
        if query.search:
            table = table.search(["name", "dosage"], query.search)
        table = table.order("created_at", desc=True).range(offset, offset + query.limit - 1)

        result = await table.execute(count=True)
        total = result.count or 0
        logger.info("Loaded medications page=%d rows=%d total=%d", query.page, len(result.rows), total)
        page = MedicationsPage(
            medications=result.rows,
            pagination=Pagination(
                page=query.page,
                limit=query.limit,
                total=total,
                total_pages=math.ceil(total / query.limit),
            ),
        )
        return jsonable_encoder(page)


async def load_dashboard_summary(client: SupabaseClient) -> DashboardSummary:
    total_users, active_medications, total_articles, recent = await asyncio.gather(
        client.table("user_profiles").count(),
        client.table("medications").eq("is_active", True).count(),
        client.table("articles").count(),
        client.table("user_profiles").select("id,name,email,created_at").order("created_at", desc=True).limit(5).execute(),
    )
    return DashboardSummary(
        total_users=total_users,
        active_medications=active_medications,
        total_articles=total_articles,
        recent_users=recent.rows,
    )


async def load_user_analytics(client: SupabaseClient, user_id: str) -> UserAnalytics:
    counted = ("glucose_readings", "blood_pressure_readings", "medications", "steps_entries")
    logged = ("glucose_readings", "blood_pressure_readings", "medication_history", "steps_entries")
    results = await asyncio.gather(
        *(client.table(table).eq("user_id", user_id).count() for table in counted),
        *(
            client.table(table).select("created_at").eq("user_id", user_id).order("created_at", desc=True).limit(1).execute()
            for table in logged
        ),
    )
    counts, latest = results[: len(counted)], results[len(counted) :]
    stamps = [result.rows[0]["created_at"] for result in latest if result.rows and result.rows[0].get("created_at")]
    glucose, blood_pressure, medications, steps = counts
    return UserAnalytics(
        user_id=user_id,
        glucose_readings=glucose,
        blood_pressure_readings=blood_pressure,
        medications=medications,
        steps_entries=steps,
        # PostgREST renders timestamptz in UTC, so the ISO strings compare chronologically.
        last_activity=max(stamps) if stamps else None,
    )


def _activity_item(source: str, row: dict[str, Any]) -> UserActivityItem:
    if source == "glucose_readings":
        reading_type = row.get("reading_type") or "unspecified"
        return UserActivityItem(
            type="glucose_reading",
            timestamp=row["created_at"],
            details=f"Glucose: {row.get('glucose_level')} mg/dL ({reading_type})",
        )
    return UserActivityItem(
        type="medication_log",
        timestamp=row["created_at"],
        details=f"Medication {row.get('status')}: {row.get('notes') or 'No notes'}",
    )


async def load_user_activity(client: SupabaseClient, user_id: str, page: int, limit: int) -> UserActivityPage:
    """Glucose readings and medication logs of one user, merged newest first.

    Each source is read up to the end of the requested page, which is enough to
    place every item of that page correctly.
    """
    offset = (page - 1) * limit
    columns = {
        "glucose_readings": "created_at,glucose_level,reading_type",
        "medication_history": "created_at,status,notes",
    }
    results = await asyncio.gather(
        *(
            client.table(source)
            .select(columns[source])
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(offset + limit)
            .execute(count=True)
            for source in ACTIVITY_SOURCES
        )
    )

    items = [
        _activity_item(source, row)
        for source, result in zip(ACTIVITY_SOURCES, results)
        for row in result.rows
        if row.get("created_at")
    ]
    items.sort(key=lambda item: item.timestamp, reverse=True)
    total = sum(result.count or 0 for result in results)
    return UserActivityPage(
        activities=items[offset:offset + limit],
        pagination=Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)),
    )
