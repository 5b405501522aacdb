"""
Election configuration.

All tunables of a run live in one immutable ``ElectionConfig`` value that is
passed explicitly into each call. Defaults mirror the Service Provider
Program parameters.
"""

import logging
import math
import os
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "SPP_"


class AllocationStrategy(str, Enum):
    """Rule set used to decide long-stream eligibility during allocation."""

    STANDARD = "standard"
    ELIGIBILITY_RANKED = "eligibility_ranked"

    @classmethod
    def parse(cls, value: Any) -> "AllocationStrategy":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        # "bidimensional" is the historical name of the ranked variant
        if normalized == "bidimensional":
            return cls.ELIGIBILITY_RANKED
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown allocation strategy: {value!r}") from None


@dataclass(frozen=True)
class ElectionConfig:
    total_budget: float = 4_500_000
    long_stream_ratio: float = 1 / 3
    short_stream_ratio: float = 2 / 3
    win_points: float = 1.0
    tie_points: float = 0.5
    loss_points: float = 0.0
    long_stream_rank_threshold: int = 10
    allocation_strategy: AllocationStrategy = AllocationStrategy.STANDARD
    normalize_ballots: bool = True

    def __post_init__(self):
        object.__setattr__(
            self, "allocation_strategy", AllocationStrategy.parse(self.allocation_strategy)
        )
        if self.total_budget < 0:
            raise ValueError(f"total_budget must be non-negative, got {self.total_budget}")
        if self.long_stream_ratio < 0 or self.short_stream_ratio < 0:
            raise ValueError("Stream ratios must be non-negative")
        if not math.isclose(
            self.long_stream_ratio + self.short_stream_ratio, 1.0, abs_tol=1e-9
        ):
            raise ValueError(
                f"Stream ratios must sum to 1, got "
                f"{self.long_stream_ratio} + {self.short_stream_ratio}"
            )
        if self.long_stream_rank_threshold < 0:
            raise ValueError("long_stream_rank_threshold must be >= 0")

    @property
    def point_weights(self) -> Dict[str, float]:
        return {
            "win": self.win_points,
            "tie": self.tie_points,
            "loss": self.loss_points,
        }

    def with_overrides(self, **overrides) -> "ElectionConfig":
        """Return a copy with the given fields replaced (``None`` values ignored)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "ElectionConfig":
        """
        Build a config from a plain mapping, ignoring unknown keys.

        Args:
            values: Mapping of field name to value (strings are coerced)

        Returns:
            ElectionConfig
        """
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, raw in values.items():
            if key not in known:
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue
            kwargs[key] = _coerce(key, raw)
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ElectionConfig":
        """Build a config from ``SPP_*`` environment variables."""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            env_key = f"{ENV_PREFIX}{f.name.upper()}"
            if env_key in environ:
                values[f.name] = environ[env_key]
        return cls.from_mapping(values)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["allocation_strategy"] = self.allocation_strategy.value
        return data


def _coerce(key: str, raw: Any) -> Any:
    if key == "allocation_strategy":
        return AllocationStrategy.parse(raw)
    if key == "normalize_ballots":
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)
    if key == "long_stream_rank_threshold":
        return int(raw)
    return float(raw)
