"""
Public aggregate view over reports.

Pure functions: reports in, numbers out. Nothing here writes.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
from ecsrs import config
from ecsrs.models.enums import CONCLUDED_STATUSES, ReportCategory, ReportStatus

# Recently resolved reports shown on the public page
RECENT_RESOLVED_LIMIT = 10
TOP_AREAS_LIMIT = 5
# Two decimal places of a degree is roughly a 1 km cell
HOTSPOT_PRECISION = 2


@dataclass
class AreaCount:
    area_id: Optional[int]
    name: str
    count: int


@dataclass
class Hotspot:
    latitude: float
    longitude: float
    count: int
    tracking_codes: List[str] = field(default_factory=list)


@dataclass
class PublicStats:
    total: int
    by_status: Dict[str, int]
    by_category: Dict[str, int]
    by_area: List[AreaCount]
    top_areas: List[AreaCount]
    pending: int
    in_progress: int
    concluded: int
    resolution_rate: float
    average_resolution_hours: Optional[float]
    recently_resolved: list
    hotspots: List[Hotspot]


def resolution_rate(concluded: int, total: int) -> float:
    """Percentage of concluded reports, one decimal place. 0.0 when there are none."""
    if total <= 0:
        return 0.0
    return round(concluded / total * 100, 1)


def average_resolution_hours(reports: Iterable) -> Optional[float]:
    """Mean hours from creation to resolution, over reports that have resolved_at."""
    durations = [
        (r.resolved_at - r.created_at).total_seconds() / 3600
        for r in reports
        if r.resolved_at is not None and r.created_at is not None
    ]
    if not durations:
        return None
    return round(sum(durations) / len(durations), 1)


def find_hotspots(reports: Iterable, min_reports: Optional[int] = None) -> List[Hotspot]:
    """
    Bucket geolocated reports into ~1 km grid cells and keep the busy ones.

    Derived for display only; never persisted.
    """
    threshold = config.HOTSPOT_MIN_REPORTS if min_reports is None else min_reports
    grid = defaultdict(list)
    for report in reports:
        if report.latitude is None or report.longitude is None:
            continue
        key = (
            round(report.latitude, HOTSPOT_PRECISION),
            round(report.longitude, HOTSPOT_PRECISION)
        )
        grid[key].append(report)

    hotspots = [
        Hotspot(
            latitude=lat,
            longitude=lng,
            count=len(members),
            tracking_codes=[r.tracking_code for r in members]
        )
        for (lat, lng), members in grid.items()
        if len(members) >= threshold
    ]
    hotspots.sort(key=lambda h: h.count, reverse=True)
    return hotspots


def compute_public_stats(reports: Iterable, area_names: Optional[Dict[int, str]] = None) -> PublicStats:
    """
    Counts per status, category and area plus the resolution rate.

    resolved and closed both count as concluded. An empty input yields zero
    counts and a 0.0 rate.
    """
    reports = list(reports)
    area_names = area_names or {}

    by_status = {status.value: 0 for status in ReportStatus}
    by_category = {category.value: 0 for category in ReportCategory}
    area_counts = defaultdict(int)

    for report in reports:
        by_status[report.status.value] += 1
        by_category[report.category.value] += 1
        if report.area_id is not None:
            area_counts[report.area_id] += 1

    by_area = [
        AreaCount(area_id=area_id, name=area_names.get(area_id, "Unknown"), count=count)
        for area_id, count in area_counts.items()
    ]
    by_area.sort(key=lambda a: (-a.count, a.name))

    concluded = sum(by_status[s.value] for s in CONCLUDED_STATUSES)

    resolved = [
        r for r in reports
        if r.status in CONCLUDED_STATUSES and r.resolved_at is not None
    ]
    resolved.sort(key=lambda r: r.resolved_at, reverse=True)

    return PublicStats(
        total=len(reports),
        by_status=by_status,
        by_category=by_category,
        by_area=by_area,
        top_areas=by_area[:TOP_AREAS_LIMIT],
        pending=by_status[ReportStatus.SUBMITTED.value],
        in_progress=by_status[ReportStatus.ASSIGNED.value] + by_status[ReportStatus.IN_PROGRESS.value],
        concluded=concluded,
        resolution_rate=resolution_rate(concluded, len(reports)),
        average_resolution_hours=average_resolution_hours(reports),
        recently_resolved=resolved[:RECENT_RESOLVED_LIMIT],
        hotspots=find_hotspots(reports)
    )
