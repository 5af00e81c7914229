import dataclasses
import logging
import time
import typing

import requests

logger = logging.getLogger(__name__)

T = typing.TypeVar('T')

_transient_status_codes = (408, 429, 500, 502, 503, 504)


def is_transient(error: BaseException) -> bool:
    '''
    returns whether the given error is considered to be transient (i.e. worth a retry):
    connection-errors, timeouts and HTTP-errors w/ status codes indicating server-side or
    throttling-issues.
    '''
    if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True

    if isinstance(error, requests.exceptions.HTTPError):
        if (response := error.response) is None:
            return True
        return response.status_code in _transient_status_codes

    return isinstance(error, (ConnectionError, TimeoutError))


def retry_always(error: BaseException) -> bool:
    return True


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    '''
    bounded retry-policy w/ exponential backoff.

    max_attempts: total number of attempts (including the first one)
    delay_seconds: delay before the second attempt; multiplied by backoff_factor for each
        further attempt, but never exceeding max_delay_seconds
    retryable: predicate deciding whether a caught exception warrants another attempt
    '''
    max_attempts: int = 5
    delay_seconds: float = 0.1
    backoff_factor: float = 2.0
    max_delay_seconds: float = 10.0
    retryable: typing.Callable[[BaseException], bool] = is_transient
    sleep: typing.Callable[[float], None] = time.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f'{self.max_attempts=} must be at least 1')

    def delay(self, attempt: int) -> float:
        '''
        returns the delay to wait after the given (1-based) failed attempt
        '''
        return min(
            self.delay_seconds * self.backoff_factor ** (attempt - 1),
            self.max_delay_seconds,
        )

    def __call__(
        self,
        function: typing.Callable[[], T],
        description: str='operation',
    ) -> T:
        '''
        calls the given function until it succeeds, raises a non-retryable error, or until
        attempts are exhausted (in which case the last error is re-raised).
        '''
        for attempt in range(1, self.max_attempts + 1):
            try:
                return function()
            except Exception as e:
                if not self.retryable(e):
                    raise
                if attempt >= self.max_attempts:
                    logger.warning(f'{description} failed: {e} - giving up after {attempt=}')
                    raise

                delay = self.delay(attempt)
                remaining_attempts = self.max_attempts - attempt
                logger.warning(
                    f'{description} failed: {e} - trying again in {delay}s ({remaining_attempts=})'
                )
                self.sleep(delay)


# retry-policy that does not retry (useful for tests, or for callers implementing their own
# retry-semantics)
no_retry = RetryPolicy(max_attempts=1)
