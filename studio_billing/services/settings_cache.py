"""
Settings Cache - admin-tunable system settings with a TTL.

One SettingsCache is created at startup and handed to whatever needs
settings; nothing reads system_config directly. Writes go through
SystemConfigService, which invalidates the cache.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.db.models import SystemConfig, utc_now
from studio_billing.models.api import TaskKind
from studio_billing.observability.logging import get_logger

logger = get_logger(__name__)

VIDEO_FAST_COST_KEY = "video_fast_credit_cost"
VIDEO_QUALITY_COST_KEY = "video_quality_credit_cost"
IMAGE_COST_KEY = "image_credit_cost"
PROVIDER_ENABLED_KEY = "provider_enabled"

QUALITY_MODE = "quality"


@dataclass(frozen=True)
class StudioSettings:
    """Effective system settings."""

    video_fast_credit_cost: int = 30
    video_quality_credit_cost: int = 100
    image_credit_cost: int = 10
    provider_enabled: bool = True

    def cost_for(self, kind: TaskKind, mode: str) -> int:
        """Credits one generation of this kind and mode costs."""
        if kind == TaskKind.IMAGE:
            return self.image_credit_cost
        if mode.lower() == QUALITY_MODE:
            return self.video_quality_credit_cost
        return self.video_fast_credit_cost

    @classmethod
    def from_rows(cls, rows: dict[str, str]) -> "StudioSettings":
        """Build settings from system_config rows; bad or missing values keep defaults."""
        defaults = cls()
        return cls(
            video_fast_credit_cost=_parse_cost(
                rows, VIDEO_FAST_COST_KEY, defaults.video_fast_credit_cost
            ),
            video_quality_credit_cost=_parse_cost(
                rows, VIDEO_QUALITY_COST_KEY, defaults.video_quality_credit_cost
            ),
            image_credit_cost=_parse_cost(rows, IMAGE_COST_KEY, defaults.image_credit_cost),
            provider_enabled=_parse_bool(rows, PROVIDER_ENABLED_KEY, defaults.provider_enabled),
        )


def _parse_cost(rows: dict[str, str], key: str, default: int) -> int:
    raw = rows.get(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if value < 0:
        logger.warning("system_config_invalid_value", key=key, value=raw, default=default)
        return default
    return value


def _parse_bool(rows: dict[str, str], key: str, default: bool) -> bool:
    raw = rows.get(key)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in ("true", "1", "yes", "on"):
        return True
    if normalized in ("false", "0", "no", "off"):
        return False
    logger.warning("system_config_invalid_value", key=key, value=raw, default=default)
    return default


class SettingsCache:
    """Caches StudioSettings for ttl_seconds after each load."""

    def __init__(
        self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: StudioSettings | None = None
        self._loaded_at = 0.0

    async def get(self, session: AsyncSession) -> StudioSettings:
        """Cached settings, reloading from system_config once the TTL has passed."""
        if self._value is not None and self._clock() - self._loaded_at < self.ttl_seconds:
            return self._value

        result = await session.execute(select(SystemConfig.key, SystemConfig.value))
        rows = {key: value for key, value in result.all()}
        self._value = StudioSettings.from_rows(rows)
        self._loaded_at = self._clock()
        logger.debug("system_settings_loaded", keys=sorted(rows))
        return self._value

    def invalidate(self) -> None:
        """Drop the cached value; the next get() reloads."""
        self._value = None


class SystemConfigService:
    """Writes system_config rows and keeps the cache honest."""

    def __init__(self, session: AsyncSession, cache: SettingsCache) -> None:
        self.session = session
        self.cache = cache

    async def set_value(
        self,
        key: str,
        value: str,
        updated_by: str | None = None,
        description: str | None = None,
        commit: bool = True,
    ) -> None:
        """Upsert one setting and invalidate the cache."""
        row = await self.session.get(SystemConfig, key)
        if row is None:
            row = SystemConfig(key=key, value=value, description=description)
            self.session.add(row)
        else:
            row.value = value
            if description is not None:
                row.description = description
        row.updated_by = updated_by
        row.updated_at = utc_now()
        await self.session.flush()

        if commit:
            await self.session.commit()
        self.cache.invalidate()
        logger.info("system_config_updated", key=key, value=value, updated_by=updated_by)

    async def update(self, values: dict[str, str], updated_by: str | None = None) -> StudioSettings:
        """Apply several settings in one transaction and return the fresh settings."""
        for key, value in values.items():
            await self.set_value(key, value, updated_by=updated_by, commit=False)
        await self.session.commit()
        self.cache.invalidate()
        return await self.cache.get(self.session)
