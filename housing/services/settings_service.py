"""Typed policy settings with validation at write and read-through caching."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from housing.domain.errors import (
    AllocationError,
    AllocationErrorKind,
    SettingUpdateOutcome,
)
from housing.repository.data_repository import DataRepository
from housing.services.cache_service import CacheService
from housing.utils.config import Settings, get_settings
from housing.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class SettingDefinition:
    category: str
    key: str
    value_type: type
    default: Any
    minimum: Optional[int] = None
    maximum: Optional[int] = None
    description: str = ""

    @property
    def cache_key(self) -> str:
        return f"settings:{self.category}:{self.key}"


def age_gap_definition(settings: Settings) -> SettingDefinition:
    return SettingDefinition(
        category="accommodations",
        key="ageGapYears",
        value_type=int,
        default=settings.age_gap_default_years,
        minimum=settings.age_gap_min_years,
        maximum=settings.age_gap_max_years,
        description="Maximum allowed age difference within a room",
    )


def _parse(definition: SettingDefinition, raw: str) -> Any:
    if definition.value_type is bool:
        lowered = raw.strip().lower()
        if lowered not in {"true", "false"}:
            raise ValueError(f"not a boolean: {raw!r}")
        return lowered == "true"
    return definition.value_type(raw)


def _serialize(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class SettingsService:
    """Key/value policy store; values leave this class already typed."""

    def __init__(
        self,
        repository: DataRepository,
        cache: CacheService,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository
        self._cache = cache
        self.age_gap_tolerance = age_gap_definition(self._settings)

    def _load(self, definition: SettingDefinition) -> Any:
        raw = self._repository.get_setting_value(definition.category, definition.key)
        if raw is None:
            return definition.default
        try:
            value = _parse(definition, raw)
        except ValueError:
            logger.warning(
                "Malformed stored setting; using default | category=%s | key=%s | raw=%r",
                definition.category,
                definition.key,
                raw,
            )
            return definition.default
        if self.validate(definition, value) is not None:
            logger.warning(
                "Stored setting outside permitted range; using default | key=%s | value=%r",
                definition.key,
                value,
            )
            return definition.default
        return value

    def get(self, definition: SettingDefinition) -> Any:
        return self._cache.with_cache(
            definition.cache_key,
            self._settings.settings_cache_ttl_seconds,
            lambda: self._load(definition),
        )

    def validate(self, definition: SettingDefinition, value: Any) -> Optional[AllocationError]:
        expected = definition.value_type
        # bool is an int subclass and must not pass as a number.
        if isinstance(value, bool) and expected is not bool:
            valid_type = False
        else:
            valid_type = isinstance(value, expected)
        if not valid_type:
            return AllocationError(
                AllocationErrorKind.POLICY_OUT_OF_RANGE,
                f"{definition.key} must be of type {expected.__name__}",
                {"value": value},
            )
        if definition.minimum is not None and value < definition.minimum:
            return self._out_of_range(definition, value)
        if definition.maximum is not None and value > definition.maximum:
            return self._out_of_range(definition, value)
        return None

    @staticmethod
    def _out_of_range(definition: SettingDefinition, value: Any) -> AllocationError:
        return AllocationError(
            AllocationErrorKind.POLICY_OUT_OF_RANGE,
            (
                f"{definition.key} must be an integer between "
                f"{definition.minimum} and {definition.maximum}"
            ),
            {"value": value, "minimum": definition.minimum, "maximum": definition.maximum},
        )

    def set(self, definition: SettingDefinition, value: Any, actor: str) -> SettingUpdateOutcome:
        error = self.validate(definition, value)
        if error is not None:
            logger.info(
                "Setting update rejected | key=%s | value=%r | actor=%s",
                definition.key,
                value,
                actor,
            )
            return SettingUpdateOutcome(error=error)

        self._repository.upsert_setting(
            category=definition.category,
            key=definition.key,
            value=_serialize(value),
            value_type=definition.value_type.__name__,
            description=definition.description,
            updated_by=actor,
        )
        self._cache.invalidate(definition.cache_key)
        logger.info(
            "Setting updated | category=%s | key=%s | value=%r | actor=%s",
            definition.category,
            definition.key,
            value,
            actor,
        )
        return SettingUpdateOutcome(value=value)

    def get_age_gap_tolerance(self) -> int:
        return int(self.get(self.age_gap_tolerance))

    def set_age_gap_tolerance(self, value: Any, actor: str) -> SettingUpdateOutcome:
        return self.set(self.age_gap_tolerance, value, actor)
