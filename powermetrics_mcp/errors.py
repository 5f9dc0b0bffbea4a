"""Error types surfaced by the powermetrics stream.

Content problems never raise: a line that matches nothing (or matches but
carries an unparseable number) is simply inert. The types below cover the
source and lifecycle faults that end up on a stream's error channel, plus
configuration mistakes raised eagerly.
"""
from __future__ import annotations
from typing import Optional


class PowermetricsError(Exception):
    """Base class for everything this package raises or reports."""


class ConfigError(PowermetricsError, ValueError):
    pass


class StreamCancelled(PowermetricsError):
    """Reported once on the error channel when a stream is cancelled."""

    def __init__(self, reason: str = 'cancelled'):
        super().__init__(f'powermetrics stream cancelled: {reason}')
        self.reason = reason


class SourceReadError(PowermetricsError):
    """The underlying byte source failed while being read.

    The original exception is chained as __cause__.
    """


class ProducerExitError(PowermetricsError):
    """The powermetrics process exited with a failure after the stream ended."""

    def __init__(self, returncode: Optional[int], detail: str = ''):
        msg = f'powermetrics exited with status {returncode}'
        if detail:
            msg = f'{msg}: {detail}'
        super().__init__(msg)
        self.returncode = returncode
        self.detail = detail
