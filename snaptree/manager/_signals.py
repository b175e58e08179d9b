# Copyright Red Hat
#
# snaptree/manager/_signals.py - Snapshot tree signal handling
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Helpers for cancelling a run on termination signals, and for blocking and
unblocking signal delivery around critical sections.
"""
from signal import (
    SIG_BLOCK,
    SIG_UNBLOCK,
    SIGHUP,
    SIGINT,
    SIGTERM,
    Signals,
    pthread_sigmask,
    signal,
)
from functools import wraps
from typing import Dict, Optional
import logging

from snaptree import EXIT_SIGNAL_BASE, SnaptreeInterrupted

_log = logging.getLogger(__name__)
_log_debug = _log.debug
_log_warn = _log.warning

_to_block = {SIGINT, SIGTERM, SIGHUP}


def _signal_name(signum: int) -> str:
    try:
        return Signals(signum).name
    except ValueError:
        return str(signum)


def block_signals():
    """
    Block termination signals before entering critical section.
    """
    _log_debug("Blocking termination signals %s", _to_block)
    pthread_sigmask(SIG_BLOCK, _to_block)


def unblock_signals():
    """
    Unblock and deliver termination signals after leaving critical section.
    """
    _log_debug("Unblocking termination signals %s", _to_block)
    pthread_sigmask(SIG_UNBLOCK, _to_block)


def suspend_signals(func):
    """
    Decorator to wrap functions that implement a critical section.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        block_signals()
        try:
            ret = func(*args, **kwargs)
        finally:
            unblock_signals()
        return ret

    return wrapper


class CancelToken:
    """
    Records a request to cancel the current run. Checked by the orchestrator
    at phase and volume boundaries.
    """

    def __init__(self):
        self.signum: Optional[int] = None

    @property
    def cancelled(self) -> bool:
        """
        ``True`` once cancellation has been requested.
        """
        return self.signum is not None

    def cancel(self, signum: int):
        """
        Request cancellation on behalf of signal ``signum``. Only the first
        request is recorded.
        """
        if self.signum is None:
            self.signum = signum

    def check(self):
        """
        Raise ``SnaptreeInterrupted`` if cancellation has been requested.
        """
        if self.signum is not None:
            raise SnaptreeInterrupted(self.signum)


class InterruptHandler:
    """
    One-shot handler for process termination signals.

    While armed, the first termination signal cancels ``token`` and raises
    ``SnaptreeInterrupted`` in the main thread so that the run unwinds
    straight to cleanup. The handler raises at most once: after the
    first raise, or once ``quiesce()`` is called, a signal is only recorded
    in ``token``. ``disarm()`` replaces the handler with one that
    simply exits, so a later signal can never start a second cleanup.
    """

    def __init__(self, token: CancelToken):
        self.token = token
        self._saved: Dict[int, object] = {}
        self.armed = False

    def _interrupt(self, signum, _frame):
        if self.token.cancelled or not self.armed:
            self.token.cancel(signum)
            _log_warn("Received %s: run already finishing", _signal_name(signum))
            return
        _log_warn("Received %s: cancelling run", _signal_name(signum))
        self.armed = False
        self.token.cancel(signum)
        raise SnaptreeInterrupted(signum)

    @staticmethod
    def _exit(signum, _frame):
        _log_warn("Received %s during cleanup: exiting", _signal_name(signum))
        raise SystemExit(EXIT_SIGNAL_BASE + signum)

    def _install(self, handler):
        for signum in sorted(_to_block):
            try:
                previous = signal(signum, handler)
            except ValueError as err:
                # Handlers can only be installed from the main thread.
                _log_debug("Not installing %s handler: %s", _signal_name(signum), err)
                continue
            self._saved.setdefault(signum, previous)

    def arm(self):
        """
        Install the cancellation handler for all termination signals.
        """
        _log_debug("Arming interrupt handler for %s", _to_block)
        self._install(self._interrupt)
        self.armed = True

    def quiesce(self):
        """
        Stop raising ``SnaptreeInterrupted``. A signal received after this
        call only cancels ``token``.
        """
        self.armed = False
        _log_debug("Quiesced interrupt handler")

    def disarm(self):
        """
        Replace the cancellation handler with a plain exit handler.
        """
        _log_debug("Disarming interrupt handler")
        self._install(self._exit)
        self.armed = False

    def restore(self):
        """
        Restore the signal handlers that were active before ``arm()``.
        """
        for signum, previous in self._saved.items():
            # None: the previous handler was not installed from Python.
            if previous is not None:
                signal(signum, previous)
        self._saved.clear()
        self.armed = False
