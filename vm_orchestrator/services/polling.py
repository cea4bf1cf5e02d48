import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollOutcome(Generic[T]):
    value: T | None
    attempts: int
    elapsed_sec: float
    timed_out: bool
    cancelled: bool = False

    @property
    def found(self) -> bool:
        return not self.timed_out and not self.cancelled


class BoundedPoller:
    """Retry a check until it yields a value or the wall-clock budget runs out.

    The budget is measured with ``clock`` rather than counted in attempts, so
    a slow check eats into the same deadline as the sleeps between checks.
    ``sleep`` returns True when the wait was interrupted (the signature of
    ``threading.Event.wait``); an interrupted poll ends as cancelled.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], bool | None] = time.sleep,
    ):
        self.clock = clock
        self.sleep = sleep

    def poll(
        self,
        check: Callable[[], T | None],
        *,
        interval_sec: float,
        timeout_sec: float,
        sleep: Callable[[float], bool | None] | None = None,
    ) -> PollOutcome[T]:
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive")
        wait = sleep or self.sleep
        started = self.clock()
        attempts = 0
        while True:
            if attempts and self.clock() - started >= timeout_sec:
                return PollOutcome(
                    value=None,
                    attempts=attempts,
                    elapsed_sec=self.clock() - started,
                    timed_out=True,
                )
            attempts += 1
            try:
                value = check()
            except Exception as exc:  # noqa: BLE001
                logger.debug("poll attempt %s raised: %s", attempts, exc)
                value = None
            if value is not None:
                return PollOutcome(
                    value=value,
                    attempts=attempts,
                    elapsed_sec=self.clock() - started,
                    timed_out=False,
                )
            remaining = timeout_sec - (self.clock() - started)
            if remaining <= 0:
                continue
            if wait(min(interval_sec, remaining)):
                return PollOutcome(
                    value=None,
                    attempts=attempts,
                    elapsed_sec=self.clock() - started,
                    timed_out=False,
                    cancelled=True,
                )
