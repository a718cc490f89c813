"""
Tally connector exceptions.

Reads raise these; writes convert them into failed WriteResults so
nothing escapes the write path.
"""


class TallyError(Exception):
    """Base class for Tally connector failures."""


class TallyConnectionError(TallyError):
    """Tally is unreachable, refused the connection or timed out."""


class TallyProtocolError(TallyError):
    """Tally answered with an HTTP error or a body that is not XML."""
