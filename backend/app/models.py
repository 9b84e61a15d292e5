"""Response models for the admin API.

Every analytics field carries a zero default so ``AnalyticsSnapshot()`` is a
structurally complete snapshot on its own.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Analytics snapshot ---


class DiabetesTypeCount(BaseModel):
    diabetes_type: str
    count: int


class DiabetesStatusCount(BaseModel):
    diabetes_status: str
    count: int


class UserStats(BaseModel):
    total_users: int = 0
    new_users_this_month: int = 0
    active_users: int = 0
    diabetes_type_distribution: list[DiabetesTypeCount] = Field(default_factory=list)
    diabetes_status_distribution: list[DiabetesStatusCount] = Field(default_factory=list)


class MedicationCount(BaseModel):
    name: str
    prescription_count: int


class MedicationStats(BaseModel):
    total_medications: int = 0
    active_medications: int = 0
    adherence_rate: int = 0
    top_medications: list[MedicationCount] = Field(default_factory=list)


class ContentStats(BaseModel):
    total_articles: int = 0
    total_videos: int = 0
    published_articles: int = 0
    published_videos: int = 0
    featured_articles: int = 0
    featured_videos: int = 0


class GlucoseReadings(BaseModel):
    total: int = 0
    average: float = 0
    min: float = 0
    max: float = 0


class BloodPressureReadings(BaseModel):
    total: int = 0
    avg_systolic: float = 0
    avg_diastolic: float = 0


class StepsData(BaseModel):
    total: int = 0
    average: int = 0


class HealthStats(BaseModel):
    glucose_readings: GlucoseReadings = Field(default_factory=GlucoseReadings)
    blood_pressure_readings: BloodPressureReadings = Field(default_factory=BloodPressureReadings)
    steps_data: StepsData = Field(default_factory=StepsData)


class RecentActivity(BaseModel):
    glucose_users: int = 0
    bp_users: int = 0
    medication_users: int = 0
    steps_users: int = 0


class DailyActivity(BaseModel):
    date: str
    activity_count: int


class EngagementStats(BaseModel):
    recent_activity: RecentActivity = Field(default_factory=RecentActivity)
    daily_activity: list[DailyActivity] = Field(default_factory=list)


class AnalyticsSnapshot(BaseModel):
    user_stats: UserStats = Field(default_factory=UserStats)
    medication_stats: MedicationStats = Field(default_factory=MedicationStats)
    content_stats: ContentStats = Field(default_factory=ContentStats)
    health_stats: HealthStats = Field(default_factory=HealthStats)
    engagement_stats: EngagementStats = Field(default_factory=EngagementStats)
    timestamp: datetime = Field(default_factory=_utcnow)


# --- Listings ---


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: Optional[int] = None


class UsersPage(BaseModel):
    users: list[dict[str, Any]] = Field(default_factory=list)
    pagination: Pagination


class BlogPage(BaseModel):
    content: list[dict[str, Any]] = Field(default_factory=list)
    categories: list[dict[str, Any]] = Field(default_factory=list)
    pagination: Pagination


class MedicationsPage(BaseModel):
    medications: list[dict[str, Any]] = Field(default_factory=list)
    pagination: Pagination


class MedicationOverview(BaseModel):
    total_medications: int = 0
    active_medications: int = 0
    taken_doses: int = 0
    skipped_doses: int = 0
    adherence_rate: int = 0
    most_prescribed: list[MedicationCount] = Field(default_factory=list)
    recent_activity: list[dict[str, Any]] = Field(default_factory=list)


# --- Per-user views ---


class UserAnalytics(BaseModel):
    user_id: str
    glucose_readings: int = 0
    blood_pressure_readings: int = 0
    medications: int = 0
    steps_entries: int = 0
    last_activity: Optional[datetime] = None


class UserActivityItem(BaseModel):
    type: str
    timestamp: datetime
    details: str


class UserActivityPage(BaseModel):
    activities: list[UserActivityItem] = Field(default_factory=list)
    pagination: Pagination


# --- Exports ---


class ExportDataset(str, Enum):
    USERS = "users"
    MEDICATIONS = "medications"
    MEDICATION_HISTORY = "medication-history"
    BLOG = "blog"
    VIDEOS = "videos"


class HealthDataType(str, Enum):
    ALL = "all"
    GLUCOSE = "glucose"
    BLOOD_PRESSURE = "blood_pressure"
    STEPS = "steps"


class DashboardSummary(BaseModel):
    total_users: int = 0
    active_medications: int = 0
    total_articles: int = 0
    recent_users: list[dict[str, Any]] = Field(default_factory=list)


# --- Cache introspection ---


class CacheKeyStatus(BaseModel):
    key: str
    age_seconds: float
    fresh: bool
    fallback: bool
    refreshing: bool


class CacheStatus(BaseModel):
    name: str
    freshness_seconds: float
    hits: int
    stale_hits: int
    misses: int
    refresh_successes: int
    refresh_failures: int
    evictions: int = 0
    entries: list[CacheKeyStatus]


class CacheStatusResponse(BaseModel):
    generated_at: datetime = Field(default_factory=_utcnow)
    caches: list[CacheStatus]
