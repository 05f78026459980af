"""
probe_manager.py

Readiness model for the kube-lab health probes.

Features:
- Three fixed probes: healthz, readyz, livez.
- Each probe gets its own random activation delay, drawn once at startup
  from the inclusive range [min_delay_seconds, max_delay_seconds].
- Status is derived on every query from the start instant and the elapsed
  time; nothing is mutated after construction.
- Clock and random source are injectable so tests can pin both.

Bounds are normalized rather than rejected:
- min_delay_seconds defaults to 15 and is clamped to >= 0.
- max_delay_seconds defaults to 60 and is clamped to >= min_delay_seconds.
"""

import math
import random
import time
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Protocol, Tuple, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


DEFAULT_MIN_DELAY_SECONDS = 15
DEFAULT_MAX_DELAY_SECONDS = 60


# =========================
# Types
# =========================

class ProbeName(str, Enum):
    HEALTHZ = "healthz"
    READYZ = "readyz"
    LIVEZ = "livez"


class ProbeStatus(BaseModel):
    """Point-in-time status of a single probe."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    probe: ProbeName
    ok: bool
    delay_seconds: int
    elapsed_seconds: int
    remaining_seconds: int
    since: int  # epoch ms when the probes started

    @property
    def started_at(self) -> datetime:
        return datetime.fromtimestamp(self.since / 1000, tz=timezone.utc)

    def to_json_dict(self) -> Dict[str, object]:
        """Serialize with the camelCase keys used on the wire."""
        return self.model_dump(mode="json", by_alias=True)


class ProbeManagerOptions(BaseModel):
    # Fractional bounds are accepted here and truncated by clamp_bounds.
    min_delay_seconds: Optional[float] = None
    max_delay_seconds: Optional[float] = None


class Clock(Protocol):
    def time(self) -> float: ...

    def monotonic(self) -> float: ...


class SystemClock:
    """Wall clock for the start instant, monotonic clock for elapsed time."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()


# =========================
# Readiness model
# =========================

def clamp_bounds(
    min_delay_seconds: Optional[float] = None,
    max_delay_seconds: Optional[float] = None,
) -> Tuple[int, int]:
    """Apply defaults and clamp the delay bounds into a valid range."""
    low = DEFAULT_MIN_DELAY_SECONDS if min_delay_seconds is None else int(min_delay_seconds)
    low = max(0, low)
    high = DEFAULT_MAX_DELAY_SECONDS if max_delay_seconds is None else int(max_delay_seconds)
    high = max(low, high)
    return low, high


class ProbeManager:
    """
    Owns the probe start instant and the per-probe delays.

    An instance is fully initialized (including all random draws) before
    __init__ returns, and is read-only afterwards, so it can be shared by
    concurrent request handlers without locking.
    """

    def __init__(
        self,
        min_delay_seconds: Optional[float] = None,
        max_delay_seconds: Optional[float] = None,
        *,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        seed: Optional[int] = None,
    ):
        self._min_delay_seconds, self._max_delay_seconds = clamp_bounds(
            min_delay_seconds, max_delay_seconds
        )
        self._clock: Clock = clock or SystemClock()
        if rng is None:
            rng = random.Random(seed)

        self._since_ms = int(self._clock.time() * 1000)
        self._started_mono = self._clock.monotonic()

        delays = {
            probe: rng.randint(self._min_delay_seconds, self._max_delay_seconds)
            for probe in ProbeName
        }
        self._delays: Mapping[ProbeName, int] = MappingProxyType(delays)

    @property
    def min_delay_seconds(self) -> int:
        return self._min_delay_seconds

    @property
    def max_delay_seconds(self) -> int:
        return self._max_delay_seconds

    @property
    def delays(self) -> Mapping[ProbeName, int]:
        return self._delays

    @property
    def since(self) -> int:
        return self._since_ms

    @property
    def started_at(self) -> datetime:
        return datetime.fromtimestamp(self._since_ms / 1000, tz=timezone.utc)

    def get_status(self, probe: Union[ProbeName, str]) -> ProbeStatus:
        """
        Compute the status of a probe at the current instant.

        Raises ValueError if `probe` is not one of the known probe names.
        """
        try:
            name = ProbeName(probe)
        except ValueError:
            raise ValueError(
                f"Unknown probe {probe!r}; expected one of {[p.value for p in ProbeName]}"
            ) from None

        delay_seconds = self._delays[name]
        elapsed_seconds = math.floor(self._clock.monotonic() - self._started_mono)
        remaining_seconds = max(0, delay_seconds - elapsed_seconds)

        return ProbeStatus(
            probe=name,
            ok=remaining_seconds == 0,
            delay_seconds=delay_seconds,
            elapsed_seconds=elapsed_seconds,
            remaining_seconds=remaining_seconds,
            since=self._since_ms,
        )

    def statuses(self) -> Dict[str, ProbeStatus]:
        """Status of every probe, keyed by probe name."""
        return {probe.value: self.get_status(probe) for probe in ProbeName}


def create_probe_manager(options: Optional[ProbeManagerOptions] = None, **kwargs) -> ProbeManager:
    """Build a ProbeManager from options; extra kwargs go to the constructor."""
    options = options or ProbeManagerOptions()
    return ProbeManager(
        options.min_delay_seconds,
        options.max_delay_seconds,
        **kwargs,
    )
