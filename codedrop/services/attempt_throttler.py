import logging
import math
from dataclasses import dataclass
from datetime import timedelta

from codedrop.config import LOCKOUT_BASE_SECONDS, MAX_FAILED_ATTEMPTS
from codedrop.exceptions import ConflictError
from codedrop.services.code_allocator import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptStatus:
    locked: bool
    attempts_left: int = 0
    timeout_seconds: int = 0

    def as_dict(self):
        # A caller sees either the attempts it has left or how long to wait
        if self.locked:
            return {"timeoutSeconds": self.timeout_seconds}
        return {"attemptsLeft": self.attempts_left}


class AttemptThrottler:
    """Per-IP failed verification counter with doubling lockouts.

    Three consecutive misses lock the IP for two minutes, the next lockout
    for four, and so on. A successful verification clears the counter but
    the last lockout duration is remembered.
    """

    def __init__(
        self, storage, now=utc_now,
        max_attempts: int = MAX_FAILED_ATTEMPTS,
        base_timeout: int = LOCKOUT_BASE_SECONDS,
    ):
        self.storage = storage
        self.now = now
        self.max_attempts = max_attempts
        self.base_timeout = base_timeout

    def _remaining(self, until, now):
        return math.ceil((until - now).total_seconds())

    def _locked(self, record, now):
        if record is None or record.timeout_until is None or now >= record.timeout_until:
            return None
        return AttemptStatus(
            locked=True, timeout_seconds=self._remaining(record.timeout_until, now)
        )

    def record_failure(self, ip: str) -> AttemptStatus:
        now = self.now()
        record = self.storage.get_failed_attempt(ip)

        status = self._locked(record, now)
        if status is not None:
            return status

        if record is None:
            try:
                record = self.storage.create_failed_attempt(ip, 1, now)
            except ConflictError:
                # Another request created it first
                record = self.storage.increment_failed_attempts(ip, now)
        elif record.timeout_until is not None:
            # Lockout served; counting starts over unless a concurrent
            # failure already restarted it
            record = self.storage.restart_failed_attempts(
                ip, now
            ) or self.storage.increment_failed_attempts(ip, now)
        else:
            record = self.storage.increment_failed_attempts(ip, now)

        # A concurrent failure may have locked the IP in between
        status = self._locked(record, now)
        if status is not None:
            return status

        if record.attempts < self.max_attempts:
            return AttemptStatus(locked=False, attempts_left=self.max_attempts - record.attempts)

        previous = record.timeout_duration
        duration = self.base_timeout if previous == 0 else previous * 2
        if self.storage.set_failed_attempt_timeout(
            ip, now + timedelta(seconds=duration), duration, now
        ):
            logger.warning("Locked out %s for %d seconds", ip, duration)
            return AttemptStatus(locked=True, timeout_seconds=duration)

        # Lost the race to place the lockout; report the one that won
        current = self.storage.get_failed_attempt(ip)
        return self._locked(current, now) or AttemptStatus(
            locked=False, attempts_left=self._attempts_left(current)
        )

    def check_lockout(self, ip: str) -> AttemptStatus:
        now = self.now()
        record = self.storage.get_failed_attempt(ip)
        return self._locked(record, now) or AttemptStatus(
            locked=False, attempts_left=self._attempts_left(record)
        )

    def _attempts_left(self, record):
        if record is None or record.timeout_until is not None:
            return self.max_attempts
        return max(0, self.max_attempts - record.attempts)

    def reset(self, ip):
        self.storage.reset_failed_attempts(ip)
