"""Timezone-aware cron evaluation with a fixed DST policy.

Cron fields are interpreted in the local wall-clock time of a configuration's
timezone and the resulting instant is returned in UTC. Local times that fall
into a spring-forward gap resolve to the first valid instant after the gap;
local times that occur twice during a fall-back resolve to the first
occurrence.
"""

import functools
import logging
import zoneinfo
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from croniter import CroniterError, croniter

from ..errors import ValidationError


logger = logging.getLogger(__name__)

# Longest wall-clock gap on record (a skipped calendar day) with headroom
MAX_GAP_MINUTES = 48 * 60

# Distinct expressions kept normalized; least recently used are evicted
NORMALIZED_CACHE_SIZE = 256


class CronValidationError(ValidationError):
    """Exception raised when a cron expression or timezone is invalid."""
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ScheduleEvaluator:
    """Computes the next execution instant of a cron schedule.

    ``next_run`` never raises: an unparsable expression or unknown timezone
    yields ``None`` so one bad configuration cannot break a batch.
    """

    # Named cron expressions
    NAMED_EXPRESSIONS = {
        '@yearly': '0 0 1 1 *',
        '@annually': '0 0 1 1 *',
        '@monthly': '0 0 1 * *',
        '@weekly': '0 0 * * 0',
        '@daily': '0 0 * * *',
        '@midnight': '0 0 * * *',
        '@hourly': '0 * * * *',
    }

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        max_iterations: int = 1000
    ):
        """Initialize the evaluator.

        Args:
            clock: Returns the current UTC instant; only consulted when no
                last run and no explicit ``now`` are given
            max_iterations: Upper bound on candidates inspected per call
        """
        self._clock = clock or _utc_now
        self.max_iterations = max_iterations

    def validate_expression(self, cron_expression: str) -> None:
        """Validate a cron expression.

        Args:
            cron_expression: 5-field, or 6-field with leading seconds, expression

        Raises:
            CronValidationError: If the expression is invalid
        """
        expr, has_seconds = self._normalize(cron_expression)
        try:
            croniter(expr, datetime(2000, 1, 1), second_at_beginning=has_seconds)
        except (CroniterError, ValueError, KeyError) as e:
            raise CronValidationError(f"Invalid cron expression '{cron_expression}': {e}")

    def is_valid_expression(self, cron_expression: str) -> bool:
        try:
            self.validate_expression(cron_expression)
        except CronValidationError:
            return False
        return True

    @staticmethod
    def validate_timezone(timezone_id: str) -> zoneinfo.ZoneInfo:
        """Resolve an IANA timezone identifier.

        Raises:
            CronValidationError: If the identifier is unknown
        """
        if not timezone_id or not isinstance(timezone_id, str):
            raise CronValidationError("Timezone is required")
        try:
            return zoneinfo.ZoneInfo(timezone_id)
        except (zoneinfo.ZoneInfoNotFoundError, ValueError):
            raise CronValidationError(f"Invalid timezone '{timezone_id}'. Must be valid IANA identifier")

    def next_run(
        self,
        cron_expression: str,
        timezone_id: str = 'UTC',
        last_run_utc: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> Optional[datetime]:
        """Calculate the next execution instant strictly after the reference.

        Args:
            cron_expression: Cron expression evaluated in local wall-clock time
            timezone_id: IANA timezone of the schedule
            last_run_utc: Last execution instant; when absent ``now`` is used
            now: Explicit current instant; when absent the clock is read

        Returns:
            Next run as an aware UTC datetime, or None if the schedule is
            malformed or has no upcoming occurrence
        """
        try:
            tz = self.validate_timezone(timezone_id)
            expr, has_seconds = self._normalize(cron_expression)
        except CronValidationError as e:
            logger.debug(f"Cannot evaluate schedule '{cron_expression}' ({timezone_id}): {e}")
            return None

        reference = as_utc(last_run_utc or now or self._clock())
        local_start = reference.astimezone(tz).replace(tzinfo=None)

        try:
            # croniter walks naive wall-clock time; each candidate is then resolved in tz
            itr = croniter(expr, local_start, second_at_beginning=has_seconds)
            for _ in range(self.max_iterations):
                candidate = itr.get_next(datetime)
                instant = self._resolve_local(candidate, tz)
                if instant is not None and instant > reference:
                    return instant
        except (CroniterError, ValueError, KeyError, OverflowError) as e:
            logger.debug(f"Failed to evaluate cron expression '{cron_expression}': {e}")
            return None

        logger.debug(f"No run found for '{cron_expression}' within {self.max_iterations} candidates")
        return None

    def upcoming_runs(
        self,
        cron_expression: str,
        timezone_id: str = 'UTC',
        after: Optional[datetime] = None,
        count: int = 5
    ) -> List[datetime]:
        """Return up to ``count`` consecutive run instants after ``after``."""
        runs: List[datetime] = []
        reference = after or self._clock()
        while len(runs) < count:
            next_time = self.next_run(cron_expression, timezone_id, last_run_utc=reference)
            if next_time is None:
                break
            runs.append(next_time)
            reference = next_time
        return runs

    def classify_local_time(self, local_time: datetime, timezone_id: str) -> str:
        """Classify a naive wall-clock time in a timezone.

        Returns:
            'nonexistent' inside a spring-forward gap, 'ambiguous' inside a
            fall-back overlap, otherwise 'normal'
        """
        tz = self.validate_timezone(timezone_id)
        naive = local_time.replace(tzinfo=None)
        if not self._exists(naive, tz):
            return 'nonexistent'
        if naive.replace(tzinfo=tz, fold=0).utcoffset() != naive.replace(tzinfo=tz, fold=1).utcoffset():
            return 'ambiguous'
        return 'normal'

    def clear_cache(self) -> None:
        """Clear the cron expression parsing cache shared by all evaluators."""
        _normalize_expression.cache_clear()
        logger.debug("Cleared cron expression cache")

    def _normalize(self, cron_expression: str) -> Tuple[str, bool]:
        """Expand named expressions and check the field count.

        Returns:
            Tuple of (expression, has_seconds_field)
        """
        if not cron_expression or not isinstance(cron_expression, str):
            raise CronValidationError("Cron expression is required")
        return _normalize_expression(cron_expression)

    @staticmethod
    def _exists(naive: datetime, tz: zoneinfo.ZoneInfo) -> bool:
        roundtrip = naive.replace(tzinfo=tz).astimezone(timezone.utc).astimezone(tz)
        return roundtrip.replace(tzinfo=None) == naive

    def _resolve_local(self, naive: datetime, tz: zoneinfo.ZoneInfo) -> Optional[datetime]:
        """Map a wall-clock candidate to UTC under the DST policy."""
        if self._exists(naive, tz):
            # fold=0 selects the first occurrence of an ambiguous time
            return naive.replace(tzinfo=tz, fold=0).astimezone(timezone.utc)

        candidate = naive.replace(second=0, microsecond=0)
        for _ in range(MAX_GAP_MINUTES):
            candidate += timedelta(minutes=1)
            if self._exists(candidate, tz):
                logger.debug(f"Local time {naive} does not exist in {tz.key}; using {candidate}")
                return candidate.replace(tzinfo=tz).astimezone(timezone.utc)
        return None


@functools.lru_cache(maxsize=NORMALIZED_CACHE_SIZE)
def _normalize_expression(cron_expression: str) -> Tuple[str, bool]:
    expr = ScheduleEvaluator.NAMED_EXPRESSIONS.get(cron_expression.strip().lower(), cron_expression.strip())
    fields = expr.split()
    if len(fields) not in (5, 6):
        raise CronValidationError(f"Cron expression must have 5 or 6 fields, got {len(fields)}")
    return ' '.join(fields), len(fields) == 6


def normalized_cache_info():
    """Hit, miss and size counters of the expression cache."""
    return _normalize_expression.cache_info()


def validate_cron_expression(cron_expression: str) -> None:
    """Convenience function to validate a cron expression.

    Raises:
        CronValidationError: If expression is invalid
    """
    ScheduleEvaluator().validate_expression(cron_expression)


def get_next_run_time(
    cron_expression: str,
    timezone_id: str = 'UTC',
    last_run_utc: Optional[datetime] = None
) -> Optional[datetime]:
    """Convenience function to get the next run time in UTC."""
    return ScheduleEvaluator().next_run(cron_expression, timezone_id, last_run_utc)
