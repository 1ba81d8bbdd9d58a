"""
Adaptive TTL - Derives a cache lifetime from the context of a call.

Strategies are small objects with a single ``calculate`` method. The engine
asks each of them and keeps the shortest answer, so the most conservative
strategy always wins. Strategies can be swapped at runtime.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable

from loguru import logger

MIN_TTL = timedelta(minutes=5)
MAX_TTL = timedelta(hours=24)
DEFAULT_TTL = timedelta(hours=1)


@dataclass(frozen=True)
class TTLContext:
    """What is known about a result when it is about to be cached."""

    resource_class: str
    query: str | None = None
    result_count: int | None = None
    is_popular: bool = False
    now: datetime | None = None


class TTLStrategy(ABC):
    """A single opinion on how long a result stays fresh."""

    @abstractmethod
    def calculate(self, context: TTLContext) -> timedelta:
        """Return a lifetime for the given context."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class BaseTTLStrategy(TTLStrategy):
    """
    Fixed lifetime per resource class, nudged by the shape of the result.

    Empty results are halved (they may fill in soon), large result sets
    are stretched by 1.5, popular queries are doubled.
    """

    DEFAULT_BASE_TTLS: dict[str, timedelta] = {
        "search": timedelta(hours=1),
        "forum": timedelta(hours=1),
        "social": timedelta(minutes=30),
        "metadata": timedelta(hours=24),
        "health": timedelta(minutes=1),
    }

    def __init__(
        self,
        base_ttls: dict[str, timedelta] | None = None,
        default_ttl: timedelta = DEFAULT_TTL,
        large_result_threshold: int = 50,
    ):
        self.base_ttls = dict(base_ttls if base_ttls is not None else self.DEFAULT_BASE_TTLS)
        self.default_ttl = default_ttl
        self.large_result_threshold = large_result_threshold

    def calculate(self, context: TTLContext) -> timedelta:
        ttl = self.base_ttls.get(context.resource_class, self.default_ttl)

        if context.result_count is not None:
            if context.result_count == 0:
                ttl *= 0.5
            elif context.result_count > self.large_result_threshold:
                ttl *= 1.5

        if context.is_popular:
            ttl *= 2

        return ttl


class LexicalTTLStrategy(TTLStrategy):
    """
    Pattern-matches the query text against freshness categories.

    The first matching pattern wins. Queries that match nothing fall back
    to a lifetime based on how many words they contain.
    """

    DEFAULT_PATTERNS: list[tuple[str, timedelta]] = [
        # time-sensitive
        (r"\b(latest|recent|today|now|current|breaking)\b", timedelta(minutes=5)),
        (r"\b(trending|hot|popular|viral)\b", timedelta(minutes=10)),
        (r"\b(yesterday|week|weekly)\b", timedelta(hours=1)),
        (r"\b(month|monthly)\b", timedelta(hours=6)),
        # static content
        (r"\b(tutorial|guide|documentation|docs|how.?to)\b", timedelta(hours=24)),
        (r"\b(comparison|vs|versus|compare)\b", timedelta(hours=12)),
        (r"\b(definition|what.?is|explain)\b", timedelta(hours=24)),
        (r"\b(history|historical|evolution)\b", timedelta(days=7)),
        # dynamic content
        (r"\b(bug|issue|error|problem|fix)\b", timedelta(minutes=30)),
        (r"\b(release|update|version|changelog)\b", timedelta(hours=1)),
        (r"\b(news|announcement)\b", timedelta(minutes=30)),
        # opinion
        (r"\b(best|top|recommended|favorite)\b", timedelta(hours=2)),
        (r"\b(review|opinion|thoughts|experience)\b", timedelta(hours=3)),
        # technical
        (r"\b(performance|optimization|speed)\b", timedelta(hours=6)),
        (r"\b(security|vulnerability|cve)\b", timedelta(minutes=30)),
        (r"\b(api|endpoint|integration)\b", timedelta(hours=12)),
    ]

    def __init__(
        self,
        patterns: Iterable[tuple[str, timedelta]] | None = None,
        default_ttl: timedelta = DEFAULT_TTL,
    ):
        source = patterns if patterns is not None else self.DEFAULT_PATTERNS
        self.patterns = [(re.compile(p, re.IGNORECASE), ttl) for p, ttl in source]
        self.default_ttl = default_ttl

    def calculate(self, context: TTLContext) -> timedelta:
        if not context.query:
            return self.default_ttl

        for pattern, ttl in self.patterns:
            if pattern.search(context.query):
                return ttl

        words = len(context.query.split())
        if words == 1:
            # broad single-topic queries move slowly
            return timedelta(hours=2)
        if words > 6:
            return timedelta(hours=3)
        return self.default_ttl


class TemporalTTLStrategy(TTLStrategy):
    """
    Scales a base lifetime by when the call happens.

    Nights and weekends are quiet, so entries live longer; weekday traffic
    peaks shorten them. Evening-peak resources shorten further in the
    evening, work-hours resources during the working week.
    """

    def __init__(
        self,
        base_ttl: timedelta = DEFAULT_TTL,
        evening_peak_resources: Iterable[str] = ("social",),
        work_hours_resources: Iterable[str] = ("forum",),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.base_ttl = base_ttl
        self.evening_peak_resources = frozenset(evening_peak_resources)
        self.work_hours_resources = frozenset(work_hours_resources)
        self._clock = clock

    def calculate(self, context: TTLContext) -> timedelta:
        now = context.now or self._clock()
        hour = now.hour
        weekend = now.weekday() >= 5
        ttl = self.base_ttl

        if weekend:
            ttl *= 1.5

        if hour >= 22 or hour < 6:
            ttl *= 2
        elif 9 <= hour <= 11:
            ttl *= 0.5
        elif 13 <= hour <= 15:
            ttl *= 0.75

        if context.resource_class in self.evening_peak_resources:
            if 18 <= hour <= 22:
                ttl *= 0.5
        elif context.resource_class in self.work_hours_resources:
            if 9 <= hour <= 17 and not weekend:
                ttl *= 0.75

        return ttl


class CombinedTTLStrategy(TTLStrategy):
    """Shortest lifetime of the wrapped strategies."""

    def __init__(self, strategies: Iterable[TTLStrategy]):
        self.strategies = list(strategies)
        if not self.strategies:
            raise ValueError("CombinedTTLStrategy needs at least one strategy")

    def calculate(self, context: TTLContext) -> timedelta:
        return min(strategy.calculate(context) for strategy in self.strategies)

    def __repr__(self) -> str:
        return f"CombinedTTLStrategy({self.strategies!r})"


class AdaptiveTTLEngine:
    """
    Computes cache lifetimes from a replaceable set of strategies.

    Usage:
        engine = AdaptiveTTLEngine()
        ttl = engine.compute(TTLContext("search", query="typescript", result_count=5))

        # operators tune freshness without touching call sites
        engine.set_strategies([BaseTTLStrategy(), LexicalTTLStrategy()])
    """

    def __init__(
        self,
        strategies: Iterable[TTLStrategy] | None = None,
        min_ttl: timedelta = MIN_TTL,
        max_ttl: timedelta = MAX_TTL,
        default_ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if min_ttl > max_ttl:
            raise ValueError("min_ttl must not exceed max_ttl")
        self.min_ttl = min_ttl
        self.max_ttl = max_ttl
        self.default_ttl = default_ttl
        self._clock = clock
        if strategies is None:
            strategies = default_strategies(clock, default_ttl)
        self._strategies: list[TTLStrategy] = list(strategies)

    @property
    def strategies(self) -> list[TTLStrategy]:
        return list(self._strategies)

    def compute(self, context: TTLContext) -> timedelta:
        """Shortest strategy lifetime, clamped to [min_ttl, max_ttl]."""
        if context.now is None:
            context = replace(context, now=self._clock())

        if not self._strategies:
            ttl = self.default_ttl
        else:
            ttl = min(strategy.calculate(context) for strategy in self._strategies)

        ttl = max(self.min_ttl, min(self.max_ttl, ttl))
        # round to whole milliseconds
        ttl = timedelta(milliseconds=round(ttl.total_seconds() * 1000))
        logger.debug(
            f"[AdaptiveTTL] {context.resource_class} query={context.query!r} "
            f"-> {ttl.total_seconds() / 60:.1f} min"
        )
        return ttl

    def add_strategy(self, strategy: TTLStrategy) -> None:
        self._strategies.append(strategy)
        logger.info(f"TTL strategy added: {strategy!r}")

    def remove_strategy(self, strategy_type: type[TTLStrategy]) -> int:
        """Drop every strategy of the given type. Returns how many were removed."""
        before = len(self._strategies)
        self._strategies = [
            s for s in self._strategies if not isinstance(s, strategy_type)
        ]
        removed = before - len(self._strategies)
        if removed:
            logger.info(f"TTL strategy removed: {strategy_type.__name__} x{removed}")
        return removed

    def set_strategies(self, strategies: Iterable[TTLStrategy]) -> None:
        self._strategies = list(strategies)
        logger.info(f"TTL strategies replaced: {self._strategies!r}")


def default_strategies(
    clock: Callable[[], datetime] = datetime.now,
    default_ttl: timedelta = DEFAULT_TTL,
) -> list[TTLStrategy]:
    """Base, lexical and temporal strategies falling back to ``default_ttl``."""
    return [
        BaseTTLStrategy(default_ttl=default_ttl),
        LexicalTTLStrategy(default_ttl=default_ttl),
        TemporalTTLStrategy(base_ttl=default_ttl, clock=clock),
    ]
