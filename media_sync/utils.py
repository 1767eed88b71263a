"""Provides utility functions and custom exceptions for the application.

This module contains common helper utilities that are used across various parts
of the media_sync package.

Classes:
    SyncConfigError: Raised for fatal configuration problems detected before any I/O.
    RemoteTransferError: A custom exception for handling remote transfer failures.
    Timeouts: Environment-overridable timeouts for remote operations.

Functions:
    retry: A decorator that retries a function call upon failure with
           configurable delay and backoff.
"""
import os
import time
import logging
from functools import wraps
from typing import Callable, Any, TypeVar

# A generic TypeVar to preserve function signatures in the decorator
F = TypeVar('F', bound=Callable[..., Any])


class Timeouts:
    SSH_CONNECT = int(os.getenv('MS_SSH_CONNECT_TIMEOUT', '10'))
    SSH_EXEC = int(os.getenv('MS_SSH_EXEC_TIMEOUT', '60'))
    TRANSFER = int(os.getenv('MS_TRANSFER_TIMEOUT', '21600'))


def retry(tries: int = 2, delay: float = 5, backoff: int = 1) -> Callable[[F], F]:
    """Creates a decorator that retries a function upon failure.

    This decorator will re-invoke the decorated function if it raises an exception.
    It supports a configurable number of retries, an initial delay, and an
    exponential backoff factor.

    Args:
        tries: The maximum number of attempts to make.
        delay: The initial delay between retries in seconds.
        backoff: The factor by which the delay is multiplied after each failed
            attempt. A value of 1 results in a fixed delay.

    Returns:
        A decorator that can be applied to a function to make it resilient to
        transient failures.
    """
    def deco_retry(f: F) -> F:
        @wraps(f)
        def f_retry(*args: Any, **kwargs: Any) -> Any:
            _tries, _delay = tries, delay
            for attempt in range(1, _tries + 1):
                try:
                    return f(*args, **kwargs)
                except Exception as e:
                    if attempt == _tries:
                        logging.error(f"Function '{f.__name__}' failed on the final attempt ({attempt}/{_tries}): {e}")
                        raise

                    msg = (f"Function '{f.__name__}' failed with '{e}'. Attempt {attempt}/{_tries}. "
                           f"Retrying in {_delay} seconds...")
                    logging.warning(msg)
                    time.sleep(_delay)
                    _delay *= backoff
            raise RuntimeError("Exited retry loop unexpectedly.")
        return f_retry  # type: ignore
    return deco_retry


class SyncConfigError(Exception):
    """Raised when the resolved settings cannot be used to start a sync run.

    Configuration errors are fatal and are reported before any filesystem walk
    or network connection takes place.
    """
    pass


class RemoteTransferError(Exception):
    """Custom exception raised when a remote operation fails.

    Covers an unreachable session, a failed batch `mkdir` and a non-zero exit
    from the copy command. The transfer engine catches it per item so that one
    failure never aborts the rest of the queue.
    """
    pass

