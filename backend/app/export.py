"""Exports of cached snapshots and raw table rows, as JSON-ready data or CSV."""

from __future__ import annotations

import asyncio
import csv
import io
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional

from app.models import ExportDataset, HealthDataType
from app.supabase_client import SupabaseClient

EXPORT_TABLES: dict[ExportDataset, str] = {
    ExportDataset.USERS: "user_profiles",
    ExportDataset.MEDICATIONS: "medications",
    ExportDataset.MEDICATION_HISTORY: "medication_history",
    ExportDataset.BLOG: "articles",
    ExportDataset.VIDEOS: "videos",
}
EXPORT_FILENAMES: dict[ExportDataset, str] = {
    ExportDataset.USERS: "users_export.csv",
    ExportDataset.MEDICATIONS: "medications_export.csv",
    ExportDataset.MEDICATION_HISTORY: "medication_history_export.csv",
    ExportDataset.BLOG: "blog_articles_export.csv",
    ExportDataset.VIDEOS: "videos_export.csv",
}
HEALTH_TABLES: dict[HealthDataType, str] = {
    HealthDataType.GLUCOSE: "glucose_readings",
    HealthDataType.BLOOD_PRESSURE: "blood_pressure_readings",
    HealthDataType.STEPS: "steps_entries",
}


def flatten_snapshot(snapshot: Any, prefix: str = "") -> Iterator[tuple[str, Any]]:
    """Yield ``(dotted.path, value)`` pairs for every leaf of *snapshot*.

    List items are addressed by index, e.g. ``user_stats.diabetes_type_distribution[0].count``.
    """
    if isinstance(snapshot, Mapping):
        for name, value in snapshot.items():
            path = f"{prefix}.{name}" if prefix else str(name)
            yield from flatten_snapshot(value, path)
    elif isinstance(snapshot, list):
        for index, value in enumerate(snapshot):
            yield from flatten_snapshot(value, f"{prefix}[{index}]")
    else:
        yield prefix, snapshot


def snapshot_to_csv(snapshot: Mapping[str, Any]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["metric", "value"])
    for path, value in flatten_snapshot(snapshot):
        writer.writerow([path, "" if value is None else value])
    return buffer.getvalue()


def rows_to_csv(rows: Iterable[Mapping[str, Any]]) -> str:
    """One CSV line per row; nested values become dotted columns.

    Columns are the union of every row's fields in first-seen order, and
    fields a row lacks are left empty.
    """
    flattened = [dict(flatten_snapshot(row)) for row in rows]
    columns = list(dict.fromkeys(column for row in flattened for column in row))
    if not columns:
        return ""

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, restval="", lineterminator="\n")
    writer.writeheader()
    writer.writerows(flattened)
    return buffer.getvalue()


def health_to_csv(data: Mapping[str, list[dict[str, Any]]]) -> str:
    return rows_to_csv({"type": kind, **row} for kind, rows in data.items() for row in rows)


async def load_table_export(client: SupabaseClient, dataset: ExportDataset, limit: int) -> list[dict[str, Any]]:
    result = await client.table(EXPORT_TABLES[dataset]).order("created_at", desc=True).limit(limit).execute()
    return result.rows


async def load_health_export(
    client: SupabaseClient,
    data_type: HealthDataType,
    limit: int,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> dict[str, list[dict[str, Any]]]:
    kinds = list(HEALTH_TABLES) if data_type == HealthDataType.ALL else [data_type]
    queries = []
    for kind in kinds:
        query = client.table(HEALTH_TABLES[kind]).order("created_at", desc=True).limit(limit)
        if date_from is not None:
            query = query.gte("created_at", date_from)
        if date_to is not None:
            query = query.lte("created_at", date_to)
        queries.append(query.execute())

    results = await asyncio.gather(*queries)
    return {kind.value: result.rows for kind, result in zip(kinds, results)}
