"""Zero-content sensor proxy inputs"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog

from rwe_governance.clock import Clock, utcnow
from rwe_governance.config import settings
from rwe_governance.database.models import ConsentScope
from rwe_governance.exceptions import ValidationError
from rwe_governance.governance.consent import ConsentLedger
from rwe_governance.governance.identity import ParticipantIdentityMapper
from rwe_governance.research.models import (
    SensorConsentConfig,
    SensorEventLevel,
    SensorEventMetadata,
    SensorProcessingPreferences,
    SensorProxyEvent,
    SensorProxyProfile,
    SensorProxyType,
    TimeOfDay,
)
from rwe_governance.research.repositories import (
    SensorConfigRepository,
    SensorEventRepository,
    SensorProfileRepository,
)

logger = structlog.get_logger(__name__)

# Sentinel ratio when all events fall on weekdays
WEEKDAY_ONLY_RATIO = 999.0


def time_of_day(moment: datetime) -> TimeOfDay:
    hour = moment.hour
    if 5 <= hour < 12:
        return TimeOfDay.MORNING
    if 12 <= hour < 17:
        return TimeOfDay.AFTERNOON
    if 17 <= hour < 21:
        return TimeOfDay.EVENING
    return TimeOfDay.NIGHT


def event_metadata(moment: datetime) -> SensorEventMetadata:
    # Sunday = 0, matching the calendar convention of the capture clients
    day_of_week = (moment.weekday() + 1) % 7
    return SensorEventMetadata(
        time_of_day=time_of_day(moment),
        day_of_week=day_of_week,
        is_weekend=day_of_week in (0, 6),
    )


def categorize_noise_level(decibels: float) -> SensorEventLevel:
    if decibels < 40:
        return SensorEventLevel.LOW
    if decibels < 60:
        return SensorEventLevel.MODERATE
    if decibels < 80:
        return SensorEventLevel.HIGH
    return SensorEventLevel.VERY_HIGH


def categorize_sleep_quality(hours_slept: float, interruptions: int) -> SensorEventLevel:
    """Good sleep is a low load level, poor sleep a very high one"""
    if hours_slept >= 7 and interruptions <= 1:
        return SensorEventLevel.LOW
    if hours_slept >= 6 and interruptions <= 2:
        return SensorEventLevel.MODERATE
    if hours_slept >= 5 and interruptions <= 3:
        return SensorEventLevel.HIGH
    return SensorEventLevel.VERY_HIGH


def categorize_activity_level(amount: float, measure: str = "steps") -> SensorEventLevel:
    """Bucket a step count or active minutes"""
    if measure == "steps":
        bounds = (10000, 7000, 3000)
    elif measure == "active_minutes":
        bounds = (60, 30, 15)
    else:
        raise ValidationError(f"Unknown activity measure: {measure}", details={"measure": measure})

    if amount >= bounds[0]:
        return SensorEventLevel.VERY_HIGH
    if amount >= bounds[1]:
        return SensorEventLevel.HIGH
    if amount >= bounds[2]:
        return SensorEventLevel.MODERATE
    return SensorEventLevel.LOW


def build_profile(
    participant_id: str,
    proxy_type: SensorProxyType,
    events: List[SensorProxyEvent],
    period_start: datetime,
    period_end: datetime,
    period_days: int,
) -> SensorProxyProfile:
    counts = {level.value: 0 for level in SensorEventLevel}
    times = {tod: 0 for tod in TimeOfDay}
    weekday = weekend = 0

    for event in events:
        counts[event.event_level.value] += 1
        times[event.metadata.time_of_day] += 1
        if event.metadata.is_weekend:
            weekend += 1
        else:
            weekday += 1

    # Ties resolve in TimeOfDay order, so an empty period reports morning
    dominant = max(TimeOfDay, key=lambda tod: times[tod])

    per_weekday, per_weekend = weekday / 5, weekend / 2
    if per_weekend > 0:
        ratio = round(per_weekday / per_weekend, 2)
    else:
        ratio = WEEKDAY_ONLY_RATIO if per_weekday > 0 else 0.0

    return SensorProxyProfile(
        participant_id=participant_id,
        proxy_type=proxy_type,
        period_start=period_start,
        period_end=period_end,
        event_counts=counts,
        average_events_per_day=round(len(events) / period_days, 2),
        dominant_time_of_day=dominant,
        weekday_vs_weekend_ratio=ratio,
    )


def aggregate_profiles(profiles: Iterable[SensorProxyProfile]) -> Dict[str, Any]:
    """Per-proxy counts, mean events per day and level distribution"""
    by_proxy = {
        proxy.value: {
            "count": 0,
            "average_events_per_day": 0.0,
            "level_distribution": {level.value: 0 for level in SensorEventLevel},
        }
        for proxy in SensorProxyType
    }
    time_distribution = {tod.value: 0 for tod in TimeOfDay}

    for profile in profiles:
        entry = by_proxy[profile.proxy_type.value]
        entry["count"] += 1
        entry["average_events_per_day"] += profile.average_events_per_day
        for level, count in profile.event_counts.items():
            entry["level_distribution"][level] += count
        time_distribution[profile.dominant_time_of_day.value] += 1

    for entry in by_proxy.values():
        if entry["count"]:
            entry["average_events_per_day"] = round(entry["average_events_per_day"] / entry["count"], 2)

    return {"by_proxy_type": by_proxy, "time_of_day_distribution": time_distribution}


class SensorProxyRecorder:
    """Records bucketed sensor events for users who opted in"""

    def __init__(
        self,
        consent_ledger: ConsentLedger,
        identity_mapper: ParticipantIdentityMapper,
        config_repository: Optional[SensorConfigRepository] = None,
        event_repository: Optional[SensorEventRepository] = None,
        profile_repository: Optional[SensorProfileRepository] = None,
        clock: Clock = utcnow,
    ):
        self.consent_ledger = consent_ledger
        self._identity_mapper = identity_mapper
        self.configs = config_repository or SensorConfigRepository()
        self.events = event_repository or SensorEventRepository()
        self.profiles = profile_repository or SensorProfileRepository()
        self.clock = clock

    # ------------------------------------------------------------------
    # Opt-in
    # ------------------------------------------------------------------

    def get_config(self, user_id: str) -> Optional[SensorConsentConfig]:
        return self.configs.get(user_id)

    def update_config(
        self,
        user_id: str,
        enabled_proxies: Iterable[SensorProxyType],
        preferences: Optional[SensorProcessingPreferences] = None,
    ) -> SensorConsentConfig:
        """Set the enabled proxies and processing preferences of a user"""
        if preferences is None:
            preferences = SensorProcessingPreferences(retention_days=settings.sensor.default_retention_days)

        with self.configs.locked(user_id):
            existing = self.configs.get(user_id)
            now = self.clock()
            config = SensorConsentConfig(
                user_id=user_id,
                enabled_proxies=[SensorProxyType(p) for p in enabled_proxies],
                consented_at=existing.consented_at if existing else now,
                last_modified_at=now,
                processing_preferences=preferences,
            )
            self.configs.save(user_id, config)

        logger.info("sensor_config_updated", enabled_proxies=[p.value for p in config.enabled_proxies])
        return config

    def is_proxy_enabled(self, user_id: str, proxy_type: SensorProxyType) -> bool:
        config = self.configs.get(user_id)
        return config is not None and SensorProxyType(proxy_type) in config.enabled_proxies

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def record_event(
        self,
        user_id: str,
        proxy_type: SensorProxyType,
        event_level: SensorEventLevel,
        duration_ms: Optional[int] = None,
    ) -> Optional[SensorProxyEvent]:
        """
        Record one bucketed event and apply the user's retention window

        Returns:
            The event, or None unless the proxy is enabled and sensor_data
            consent is active
        """
        proxy_type = SensorProxyType(proxy_type)
        if not self.is_proxy_enabled(user_id, proxy_type):
            return None
        if not self.consent_ledger.has_active_consent(user_id, ConsentScope.SENSOR_DATA):
            return None

        now = self.clock()
        event = SensorProxyEvent(
            id=str(uuid.uuid4()),
            user_id=user_id,
            proxy_type=proxy_type,
            event_level=SensorEventLevel(event_level),
            occurred_at=now,
            duration_ms=duration_ms,
            metadata=event_metadata(now),
        )
        self.events.save(event.id, event, expected_version=0)
        self._apply_retention(user_id, now)
        return event

    def _apply_retention(self, user_id: str, now: datetime) -> int:
        config = self.configs.get(user_id)
        retention_days = (
            config.processing_preferences.retention_days if config else settings.sensor.default_retention_days
        )
        cutoff = now - timedelta(days=retention_days)
        purged = 0
        for event in self.events.get_for_user(user_id):
            if event.occurred_at < cutoff and self.events.delete(event.id):
                purged += 1
        if purged:
            logger.info("sensor_events_purged", count=purged, retention_days=retention_days)
        return purged

    def get_user_events(
        self, user_id: str, proxy_type: Optional[SensorProxyType] = None
    ) -> List[SensorProxyEvent]:
        """Events of a user, newest first"""
        events = self.events.get_for_user(user_id)
        if proxy_type is not None:
            proxy_type = SensorProxyType(proxy_type)
            events = [e for e in events if e.proxy_type == proxy_type]
        return sorted(events, key=lambda e: e.occurred_at, reverse=True)

    def get_events_in_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        proxy_type: Optional[SensorProxyType] = None,
    ) -> List[SensorProxyEvent]:
        return [e for e in self.get_user_events(user_id, proxy_type) if start <= e.occurred_at <= end]

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def generate_profile(
        self,
        participant_id: str,
        user_id: str,
        proxy_type: SensorProxyType,
        period_days: int = 30,
    ) -> SensorProxyProfile:
        """Profile of one proxy over a trailing period"""
        if period_days <= 0:
            raise ValidationError("period_days must be positive", details={"period_days": period_days})
        proxy_type = SensorProxyType(proxy_type)
        now = self.clock()
        start = now - timedelta(days=period_days)
        events = self.get_events_in_range(user_id, start, now, proxy_type)
        return build_profile(participant_id, proxy_type, events, start, now, period_days)

    def get_research_eligible_data(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Publish de-identified profiles of every enabled proxy

        Returns:
            Profiles and per-proxy event counts, or None without sensor_data
            consent or research inclusion
        """
        if not self.consent_ledger.has_active_consent(user_id, ConsentScope.SENSOR_DATA):
            return None
        config = self.configs.get(user_id)
        if config is None or not config.processing_preferences.include_in_research:
            return None

        participant_id = self._identity_mapper.get_or_create(user_id)
        profiles = []
        event_counts = {proxy.value: 0 for proxy in SensorProxyType}

        for proxy_type in config.enabled_proxies:
            profile = self.generate_profile(participant_id, user_id, proxy_type)
            self.profiles.save(self.profiles.key(participant_id, proxy_type.value), profile)
            profiles.append(profile)
            event_counts[proxy_type.value] = len(self.get_user_events(user_id, proxy_type))

        logger.info("sensor_profiles_published", participant_id=participant_id, proxies=len(profiles))
        return {"participant_id": participant_id, "profiles": profiles, "event_counts": event_counts}

    def aggregate_profiles(self, profiles: Optional[List[SensorProxyProfile]] = None) -> Dict[str, Any]:
        return aggregate_profiles(profiles if profiles is not None else self.profiles.list_all())
