# Copyright ClusterHQ Inc.  See LICENSE file for details.
# -*- test-case-name: rootvol.common.test.test_retry -*-

"""
Helpers for retrying things.

Everything here blocks: waiting is done by calling ``sleep`` with the next
interval from an iterable of intervals.  ``backoff`` generates such
intervals and ``Deadline.bound`` cuts them off at a point in time.
"""

from sys import exc_info
from random import uniform
import time

from eliot import log_message, start_action


def _backoff_steps(step, maximum_step, timeout, jitter, factor):
    elapsed = 0.0
    while True:
        value = step if maximum_step is None else min(step, maximum_step)
        if jitter is not None:
            value = max(0.0, value + uniform(-jitter, jitter))
        elapsed += value
        if timeout is not None and elapsed > timeout:
            return
        yield value
        step *= factor


def backoff(step=2.0, maximum_step=30.0, timeout=5*60.0, jitter=None,
            factor=2.0):
    """
    Generate exponentially increasing values for use as the ``steps``
    argument to retry functions.

    :param float step: The first value generated.
    :param float maximum_step: The maximum value that will be
        generated. ``None`` means no maximum.
    :param float timeout: No further values will be generated when the sum of
        the generated steps is greater than ``timeout``. ``None`` means no
        timeout.
    :param float jitter: If not ``None``, the generated values will be adjusted
        by a random amount between +/- ``jitter``.
    :param float factor: The ratio between successive values.
    :returns: A generator of floats.
    """
    if step <= 0.0:
        raise ValueError(
            "Invalid ``step`` ({!r}). Must be > 0.0.".format(step))
    if factor < 1.0:
        raise ValueError(
            "Invalid ``factor`` ({!r}). Must be >= 1.0.".format(factor))
    if maximum_step is not None and maximum_step <= 0.0:
        raise ValueError(
            "Invalid ``maximum_step`` ({!r}). Must be > 0.0.".format(
                maximum_step))
    return _backoff_steps(step, maximum_step, timeout, jitter, factor)


class Deadline(object):
    """
    A single point in time by which a whole run must be finished.

    :ivar float expires_at: The time, as returned by ``clock``, at which the
        deadline passes.
    :ivar clock: A nullary callable returning the current time in seconds.
    """
    def __init__(self, expires_at, clock=time.time):
        self.expires_at = expires_at
        self.clock = clock

    @classmethod
    def after(cls, seconds, clock=time.time):
        """
        Create a deadline ``seconds`` from now.
        """
        return cls(expires_at=clock() + seconds, clock=clock)

    def remaining(self):
        """
        :return: The number of seconds left before the deadline, never less
            than zero.
        """
        return max(0.0, self.expires_at - self.clock())

    def expired(self):
        return self.clock() >= self.expires_at

    def bound(self, steps):
        """
        Truncate an iterable of delay intervals so that no interval ends past
        the deadline.

        :param steps: An iterable of delay intervals, measured in seconds.
        :return: A generator of the intervals that still fit.
        """
        for step in steps:
            remaining = self.remaining()
            if remaining <= 0:
                return
            yield min(step, remaining)

    def __repr__(self):
        return "<Deadline expires_at={!r} remaining={!r}>".format(
            self.expires_at, self.remaining())


class LoopExceeded(Exception):
    """
    Raised when ``poll_until`` runs out of intervals before its predicate
    holds.

    :ivar last_result: What the predicate returned the last time.
    """
    def __init__(self, predicate, last_result):
        Exception.__init__(
            self, u"{!r} never true in poll_until, last result: {!r}".format(
                predicate, last_result))
        self.last_result = last_result


def poll_until(predicate, steps, sleep=None):
    """
    Call ``predicate`` until it returns something true, sleeping for the next
    interval from ``steps`` after each false result.

    :param predicate: A nullary callable.
    :param steps: An iterable of delay intervals, measured in seconds.  The
        predicate is called once more than there are intervals.
    :param sleep: Called with each interval.  Defaults to ``time.sleep``.

    :raise LoopExceeded: If ``steps`` runs out first.
    :return: The true result.
    """
    if sleep is None:
        sleep = time.sleep
    for step in steps:
        result = predicate()
        if result:
            return result
        sleep(step)
    result = predicate()
    if not result:
        raise LoopExceeded(predicate, result)
    return result


_TRY_UNTIL_SUCCESS = u"rootvol:failure-retry"
_TRY_RETRYING = _TRY_UNTIL_SUCCESS + u":retrying"
_TRY_FAILURE = _TRY_UNTIL_SUCCESS + u":failure"
_TRY_SUCCESS = _TRY_UNTIL_SUCCESS + u":success"


def retry_always(exc_type, value, traceback):
    """
    A ``should_retry`` which retries every exception.
    """


def retry_if(predicate):
    """
    Create a ``should_retry`` for ``with_retry`` which retries exceptions
    ``predicate`` accepts and re-raises the others.

    :param predicate: A one-argument callable taking the raised exception.
    """
    def should_retry(exc_type, value, traceback):
        if not predicate(value):
            raise value.with_traceback(traceback)
    return should_retry


def _call_until_success(function, args, kwargs, should_retry, delays, sleep):
    """
    Call ``function`` until it returns, ``should_retry`` raises or ``delays``
    runs out.  In the last two cases the exception propagates.
    """
    if sleep is None:
        sleep = time.sleep
    delays = iter(delays)
    while True:
        log_message(message_type=_TRY_RETRYING)
        try:
            result = function(*args, **kwargs)
        except Exception as e:
            should_retry(*exc_info())
            log_message(message_type=_TRY_FAILURE, exception=str(e))
            delay = next(delays, None)
            if delay is None:
                raise
            sleep(delay)
        else:
            log_message(message_type=_TRY_SUCCESS, result=repr(result))
            return result


def with_retry(method, should_retry=None, steps=None, sleep=None):
    """
    Return a new version of ``method`` that retries.

    :param callable method: A method to retry.
    :param callable should_retry: A three-argument callable which accepts the
        exception state and returns ``None`` or raises an exception.  If
        ``None`` is returned, the call will be retried after a delay given by
        the next element of ``steps``.  If an exception is raised, no further
        retries are attempted and the exception is propagated from the method
        call.
    :param steps: An iterable of delay intervals (as ``timedelta``
        instances).  These intervals give the amount of time to wait between
        retries.  A single-use iterator is consumed across calls.
    :param callable sleep: A replacement for ``time.sleep``.

    :return: A method that will retry.
    """
    if should_retry is None:
        should_retry = retry_always
    if steps is None:
        raise ValueError("``steps`` must be given.")

    def method_with_retry(*args, **kwargs):
        with start_action(action_type=_TRY_UNTIL_SUCCESS,
                          function=_callable_repr(method)):
            return _call_until_success(
                method, args, kwargs, should_retry,
                (step.total_seconds() for step in steps), sleep,
            )
    return method_with_retry


def _callable_repr(method):
    try:
        return u"{}.{}".format(method.__module__, method.__qualname__)
    except AttributeError:
        return repr(method)
