"""Analytics aggregation over the Supabase tables of the mobile app.

The aggregator fans out to five independent metric groups. Each group is
guarded on its own: if its queries fail, that group falls back to its zeroed
model while the others keep their real values, so the snapshot shape is
always complete.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from fastapi.encoders import jsonable_encoder

from app.models import (
    AnalyticsSnapshot,
    BloodPressureReadings,
    ContentStats,
    DailyActivity,
    DiabetesStatusCount,
    DiabetesTypeCount,
    EngagementStats,
    GlucoseReadings,
    HealthStats,
    MedicationCount,
    MedicationOverview,
    MedicationStats,
    RecentActivity,
    StepsData,
    UserStats,
)
from app.supabase_client import SupabaseClient, SupabaseNotConfiguredError

logger = logging.getLogger("sugar.analytics")

ANALYTICS_CACHE_KEY = "analytics"
MEDICATION_OVERVIEW_KEY = "overview"

DISTRIBUTION_SAMPLE_LIMIT = 1000
MEDICATION_SAMPLE_LIMIT = 100
HEALTH_SAMPLE_LIMIT = 100
ENGAGEMENT_SAMPLE_LIMIT = 500
TOP_MEDICATIONS = 5
RECENT_HISTORY_LIMIT = 10
HEALTH_WINDOW_DAYS = 30
ENGAGEMENT_WINDOW_DAYS = 7
# Doses that were due; pending or scheduled entries do not count towards adherence.
ADHERENCE_STATUSES = ("taken", "skipped")

T = TypeVar("T")


def fallback_snapshot(_key: str = ANALYTICS_CACHE_KEY) -> dict[str, Any]:
    """Zeroed analytics snapshot served before any real aggregation finishes."""
    return jsonable_encoder(AnalyticsSnapshot())


def medication_overview_fallback(_key: str = MEDICATION_OVERVIEW_KEY) -> dict[str, Any]:
    return jsonable_encoder(MedicationOverview())


def _numbers(rows: Iterable[dict[str, Any]], column: str) -> list[float]:
    values: list[float] = []
    for row in rows:
        raw = row.get(column)
        if raw is None:
            continue
        try:
            values.append(float(raw))
        except (TypeError, ValueError):
            continue
    return values


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _distinct_users(rows: Iterable[dict[str, Any]]) -> int:
    return len({row.get("user_id") for row in rows if row.get("user_id") is not None})


def _column_counts(rows: Iterable[dict[str, Any]], column: str) -> list[tuple[str, int]]:
    counts = Counter(str(row[column]) for row in rows if row.get(column) is not None)
    return counts.most_common()


def adherence_rate(rows: Iterable[dict[str, Any]]) -> int:
    """Percentage of taken doses among taken and skipped ones, 0 when there are none."""
    statuses = [str(row.get("status") or "").lower() for row in rows]
    due = [status for status in statuses if status in ADHERENCE_STATUSES]
    if not due:
        return 0
    return round(due.count("taken") / len(due) * 100)


# --- metric groups ---


async def get_user_stats(client: SupabaseClient, now: datetime) -> UserStats:
    start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    profiles = "user_profiles"
    total, new_this_month, active, types, statuses = await asyncio.gather(
        client.table(profiles).count(),
        client.table(profiles).gte("created_at", start_of_month).count(),
        client.table(profiles).eq("status", "active").count(),
        client.table(profiles).select("diabetes_type").not_null("diabetes_type").limit(DISTRIBUTION_SAMPLE_LIMIT).execute(),
        client.table(profiles).select("diabetes_status").not_null("diabetes_status").limit(DISTRIBUTION_SAMPLE_LIMIT).execute(),
    )
    return UserStats(
        total_users=total,
        new_users_this_month=new_this_month,
        active_users=active,
        diabetes_type_distribution=[
            DiabetesTypeCount(diabetes_type=value, count=count)
            for value, count in _column_counts(types.rows, "diabetes_type")
        ],
        diabetes_status_distribution=[
            DiabetesStatusCount(diabetes_status=value, count=count)
            for value, count in _column_counts(statuses.rows, "diabetes_status")
        ],
    )


async def get_medication_stats(client: SupabaseClient, now: datetime) -> MedicationStats:
    since = now - timedelta(days=HEALTH_WINDOW_DAYS)
    total, active, names, history = await asyncio.gather(
        client.table("medications").count(),
        client.table("medications").eq("is_active", True).count(),
        client.table("medications").select("name").limit(MEDICATION_SAMPLE_LIMIT).execute(),
        client.table("medication_history")
        .select("status")
        .in_("status", ADHERENCE_STATUSES)
        .gte("created_at", since)
        .limit(DISTRIBUTION_SAMPLE_LIMIT)
        .execute(),
    )

    return MedicationStats(
        total_medications=total,
        active_medications=active,
        adherence_rate=adherence_rate(history.rows),
        top_medications=[
            MedicationCount(name=name, prescription_count=count)
            for name, count in _column_counts(names.rows, "name")[:TOP_MEDICATIONS]
        ],
    )


async def get_medication_overview(client: SupabaseClient) -> MedicationOverview:
    """All-time medication figures; adherence uses exact taken and skipped counts."""
    history = "medication_history"
    total, active, names, taken, skipped, recent = await asyncio.gather(
        client.table("medications").count(),
        client.table("medications").eq("is_active", True).count(),
        client.table("medications").select("name").limit(MEDICATION_SAMPLE_LIMIT).execute(),
        client.table(history).eq("status", "taken").count(),
        client.table(history).eq("status", "skipped").count(),
        client.table(history)
        .select("id,user_id,medication_id,status,notes,created_at")
        .order("created_at", desc=True)
        .limit(RECENT_HISTORY_LIMIT)
        .execute(),
    )
    due = taken + skipped
    return MedicationOverview(
        total_medications=total,
        active_medications=active,
        taken_doses=taken,
        skipped_doses=skipped,
        adherence_rate=round(taken / due * 100) if due else 0,
        most_prescribed=[
            MedicationCount(name=name, prescription_count=count)
            for name, count in _column_counts(names.rows, "name")[:TOP_MEDICATIONS]
        ],
        recent_activity=recent.rows,
    )


async def get_content_stats(client: SupabaseClient, now: datetime) -> ContentStats:
    counts = await asyncio.gather(
        client.table("articles").count(),
        client.table("videos").count(),
        client.table("articles").eq("is_published", True).count(),
        client.table("videos").eq("is_published", True).count(),
        client.table("articles").eq("is_featured", True).count(),
        client.table("videos").eq("is_featured", True).count(),
    )
    return ContentStats(
        total_articles=counts[0],
        total_videos=counts[1],
        published_articles=counts[2],
        published_videos=counts[3],
        featured_articles=counts[4],
        featured_videos=counts[5],
    )


async def get_health_stats(client: SupabaseClient, now: datetime) -> HealthStats:
    since = now - timedelta(days=HEALTH_WINDOW_DAYS)
    glucose_count, bp_count, steps_count, glucose, bp, steps = await asyncio.gather(
        client.table("glucose_readings").gte("created_at", since).count(),
        client.table("blood_pressure_readings").gte("created_at", since).count(),
        client.table("steps_entries").gte("created_at", since).count(),
        client.table("glucose_readings").select("glucose_level").gte("created_at", since).limit(HEALTH_SAMPLE_LIMIT).execute(),
        client.table("blood_pressure_readings").select("systolic,diastolic").gte("created_at", since).limit(HEALTH_SAMPLE_LIMIT).execute(),
        client.table("steps_entries").select("steps_count").gte("created_at", since).limit(HEALTH_SAMPLE_LIMIT).execute(),
    )

    glucose_readings = GlucoseReadings()
    levels = _numbers(glucose.rows, "glucose_level")
    if levels:
        glucose_readings = GlucoseReadings(
            total=glucose_count,
            average=round(_mean(levels), 1),
            min=round(min(levels), 1),
            max=round(max(levels), 1),
        )

    blood_pressure = BloodPressureReadings()
    paired = [row for row in bp.rows if row.get("systolic") is not None and row.get("diastolic") is not None]
    if paired:
        blood_pressure = BloodPressureReadings(
            total=bp_count,
            avg_systolic=round(_mean(_numbers(paired, "systolic")), 1),
            avg_diastolic=round(_mean(_numbers(paired, "diastolic")), 1),
        )

    steps_data = StepsData()
    step_counts = _numbers(steps.rows, "steps_count")
    if step_counts:
        steps_data = StepsData(total=steps_count, average=round(_mean(step_counts)))

    return HealthStats(
        glucose_readings=glucose_readings,
        blood_pressure_readings=blood_pressure,
        steps_data=steps_data,
    )


async def get_engagement_stats(client: SupabaseClient, now: datetime) -> EngagementStats:
    since = now - timedelta(days=ENGAGEMENT_WINDOW_DAYS)

    def recent(table: str):
        return (
            client.table(table)
            .select("user_id,created_at")
            .gte("created_at", since)
            .limit(ENGAGEMENT_SAMPLE_LIMIT)
            .execute()
        )

    glucose, bp, medication, steps = await asyncio.gather(
        recent("glucose_readings"),
        recent("blood_pressure_readings"),
        recent("medication_history"),
        recent("steps_entries"),
    )

    per_day: Counter[str] = Counter()
    for result in (glucose, bp, medication, steps):
        for row in result.rows:
            created_at = row.get("created_at")
            if created_at:
                per_day[str(created_at)[:10]] += 1

    days = [(now - timedelta(days=offset)).date().isoformat() for offset in range(ENGAGEMENT_WINDOW_DAYS - 1, -1, -1)]
    return EngagementStats(
        recent_activity=RecentActivity(
            glucose_users=_distinct_users(glucose.rows),
            bp_users=_distinct_users(bp.rows),
            medication_users=_distinct_users(medication.rows),
            steps_users=_distinct_users(steps.rows),
        ),
        daily_activity=[DailyActivity(date=day, activity_count=per_day.get(day, 0)) for day in days],
    )


# --- aggregator ---


async def with_default(name: str, fetch: Awaitable[T], default: Callable[[], T]) -> T:
    try:
        return await fetch
    except Exception as exc:
        logger.warning("Analytics %s failed (%s); using defaults", name, exc.__class__.__name__, exc_info=True)
        return default()


class AnalyticsAggregator:
    """Builds a complete analytics snapshot; partial failures degrade per group."""

    def __init__(
        self,
        client: Optional[SupabaseClient],
        *,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._client = client
        self._now = now

    async def __call__(self, key: str) -> dict[str, Any]:
        client = self._client
        if client is None:
            raise SupabaseNotConfiguredError()

        now = self._now()
        user_stats, medication_stats, content_stats, health_stats, engagement_stats = await asyncio.gather(
            with_default("user_stats", get_user_stats(client, now), UserStats),
            with_default("medication_stats", get_medication_stats(client, now), MedicationStats),
            with_default("content_stats", get_content_stats(client, now), ContentStats),
            with_default("health_stats", get_health_stats(client, now), HealthStats),
            with_default("engagement_stats", get_engagement_stats(client, now), EngagementStats),
        )
        snapshot = AnalyticsSnapshot(
            user_stats=user_stats,
            medication_stats=medication_stats,
            content_stats=content_stats,
            health_stats=health_stats,
            engagement_stats=engagement_stats,
            timestamp=now,
        )
        return jsonable_encoder(snapshot)


class MedicationOverviewAggregator:
    def __init__(self, client: Optional[SupabaseClient]) -> None:
        self._client = client

    async def __call__(self, key: str) -> dict[str, Any]:
        if self._client is None:
            raise SupabaseNotConfiguredError()
        return jsonable_encoder(await get_medication_overview(self._client))
