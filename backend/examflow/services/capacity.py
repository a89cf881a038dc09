"""
Capacity advisor - sizes batch leases and connection pools to the database tier.

The tier is inferred from server signals (memory, connection capacity and a
small insert/find/delete round-trip). Each tier carries conservative,
moderate and aggressive batch sizes; the chosen preset is then nudged by
recent processing speed and current queue depth and clamped to
[20, 10% of the tier's connection limit].
"""

import logging
import math
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from ..cache import TTLCache
from ..config.settings import Settings
from ..utils import utcnow
from .submission_queue import SubmissionQueue

logger = logging.getLogger(__name__)

PROFILES = ("conservative", "moderate", "aggressive")
MIN_BATCH_SIZE = 20
MAX_BATCH_CONNECTION_SHARE = 0.1
MAX_POOL_CONNECTION_SHARE = 0.8
FALLBACK_TIER = "M10"


@dataclass(frozen=True)
class Tier:
    name: str
    max_connections: int
    pool_size: int
    conservative: int
    moderate: int
    aggressive: int

    def preset(self, profile: str) -> int:
        return getattr(self, profile)


TIERS: Dict[str, Tier] = {
    "M10": Tier("M10", 1490, 400, 50, 75, 100),
    "M20": Tier("M20", 1490, 500, 75, 125, 150),
    "M30": Tier("M30", 2000, 750, 100, 175, 250),
    "M40": Tier("M40", 3000, 1000, 150, 250, 400),
    "M50": Tier("M50", 4000, 1500, 200, 350, 500),
    "M60+": Tier("M60+", 6000, 2000, 300, 500, 750),
}


@dataclass
class CapacitySignals:
    memory_mb: Optional[float] = None
    current_connections: Optional[int] = None
    available_connections: Optional[int] = None
    benchmark_ms: Optional[float] = None

    @property
    def total_connections(self) -> Optional[int]:
        if self.current_connections is None or self.available_connections is None:
            return None
        return self.current_connections + self.available_connections


class MongoCapacityProbe:
    """Collects capacity signals from the connected MongoDB deployment."""

    SCRATCH_COLLECTION = "capacity_probe"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def collect(self) -> CapacitySignals:
        status = await self.db.command("serverStatus")
        connections = status.get("connections", {})
        signals = CapacitySignals(
            current_connections=connections.get("current"),
            available_connections=connections.get("available"),
        )

        try:
            host = await self.db.client.admin.command("hostInfo")
            signals.memory_mb = host.get("system", {}).get("memSizeMB")
        except Exception as e:
            # Shared and serverless tiers refuse hostInfo
            logger.debug(f"hostInfo unavailable: {e}")

        signals.benchmark_ms = await self.benchmark()
        return signals

    async def benchmark(self) -> float:
        """Round-trip time in ms for insert + find + delete on a scratch collection."""
        scratch = self.db[self.SCRATCH_COLLECTION]
        probe_id = uuid.uuid4().hex
        started = time.perf_counter()
        await scratch.insert_one({"probe_id": probe_id, "created_at": utcnow()})
        await scratch.find_one({"probe_id": probe_id})
        await scratch.delete_one({"probe_id": probe_id})
        return (time.perf_counter() - started) * 1000


def detect_tier(signals: CapacitySignals) -> str:
    memory = signals.memory_mb
    if memory:
        if memory >= 32000:
            fast = signals.benchmark_ms is not None and signals.benchmark_ms < 10
            return "M60+" if fast else "M50"
        if memory >= 16000:
            return "M40"
        if memory >= 8000:
            return "M30"
        if memory >= 4000:
            return "M20"
        return "M10"

    total = signals.total_connections
    if total:
        for tier in sorted(TIERS.values(), key=lambda t: t.max_connections, reverse=True):
            if total >= tier.max_connections:
                return tier.name
    return FALLBACK_TIER


def load_multiplier_for(depth: Optional[int]) -> float:
    """Shallow queues get slightly bigger batches, deep ones slightly smaller."""
    if depth is None:
        return 1.0
    if depth < 50:
        return 1.1
    if depth > 200:
        return 0.9
    return 1.0


def benchmark_rating(benchmark_ms: Optional[float]) -> str:
    if benchmark_ms is None:
        return "unknown"
    if benchmark_ms < 10:
        return "high"
    if benchmark_ms < 25:
        return "medium"
    return "low"


class CapacityAdvisor:
    """Recommends batch and pool sizes; detection and recommendations are cached briefly."""

    def __init__(self, probe: MongoCapacityProbe, queue: SubmissionQueue, settings: Settings):
        self.probe = probe
        self.queue = queue
        self.settings = settings
        self._tier_cache = TTLCache(ttl_seconds=settings.CAPACITY_CACHE_TTL_SECONDS, max_size=1)
        self._recommendation_cache = TTLCache(
            ttl_seconds=settings.CAPACITY_CACHE_TTL_SECONDS, max_size=len(PROFILES)
        )

    # ============ TIER DETECTION ============

    async def tier_info(self) -> Dict[str, Any]:
        cached = self._tier_cache.get("tier")
        if cached is not None:
            return cached

        try:
            signals = await self.probe.collect()
            name = detect_tier(signals)
            info = {
                "tier": name,
                "fallback": False,
                "signals": asdict(signals),
                "benchmark_rating": benchmark_rating(signals.benchmark_ms),
            }
            logger.info(f"Detected database tier {name} (benchmark {signals.benchmark_ms}ms)")
        except Exception as e:
            logger.warning(f"⚠️ Capacity detection failed, assuming {FALLBACK_TIER}: {e}")
            info = {"tier": FALLBACK_TIER, "fallback": True, "error": str(e)}

        info["limits"] = asdict(TIERS[info["tier"]])
        info["detected_at"] = utcnow()
        self._tier_cache.set("tier", info)
        return info

    # ============ RECOMMENDATIONS ============

    async def _load_signals(self):
        try:
            average_ms = await self.queue.recent_average_processing_ms()
            depth = await self.queue.load()
        except Exception as e:
            logger.warning(f"⚠️ Queue signals unavailable for batch sizing: {e}")
            return None, None
        return average_ms, depth

    async def recommendation(self, profile: Optional[str] = None) -> Dict[str, Any]:
        """Batch size recommendation with the reasoning behind it."""
        profile = profile or self.settings.AUTO_SCALING_PROFILE
        if profile not in PROFILES:
            raise ValueError(f"Unknown profile {profile!r}, expected one of {PROFILES}")

        cached = self._recommendation_cache.get(profile)
        if cached is not None:
            return cached

        info = await self.tier_info()
        tier = TIERS[info["tier"]]
        average_ms, depth = await self._load_signals()

        performance_multiplier = 1.0
        if average_ms is not None:
            if average_ms < 50:
                performance_multiplier = 1.2
            elif average_ms > 200:
                performance_multiplier = 0.8

        load_multiplier = load_multiplier_for(depth)

        base = tier.preset(profile)
        raw = math.floor(base * performance_multiplier * load_multiplier)
        upper = math.floor(tier.max_connections * MAX_BATCH_CONNECTION_SHARE)
        batch_size = max(MIN_BATCH_SIZE, min(raw, upper))

        recommendation = {
            "batch_size": batch_size,
            "profile": profile,
            "tier": tier.name,
            "fallback": info["fallback"],
            "base_size": base,
            "performance_multiplier": performance_multiplier,
            "load_multiplier": load_multiplier,
            "average_processing_ms": average_ms,
            "queue_depth": depth,
            "bounds": [MIN_BATCH_SIZE, upper],
        }
        self._recommendation_cache.set(profile, recommendation)
        return recommendation

    async def recommend_batch_size(self, profile: Optional[str] = None) -> int:
        return (await self.recommendation(profile))["batch_size"]

    async def recommend_pool_size(self) -> int:
        info = await self.tier_info()
        tier = TIERS[info["tier"]]
        _, depth = await self._load_signals()
        load_multiplier = load_multiplier_for(depth)
        return min(
            math.floor(tier.pool_size * load_multiplier),
            math.floor(tier.max_connections * MAX_POOL_CONNECTION_SHARE),
        )

    async def all_recommendations(self) -> Dict[str, Any]:
        return {profile: await self.recommendation(profile) for profile in PROFILES}

    def clear_cache(self):
        self._tier_cache.clear()
        self._recommendation_cache.clear()
