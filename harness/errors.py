"""
Harness Errors
Exception taxonomy shared by sessions, games and the scheduler
"""


class HarnessError(Exception):
    """Base class for all harness errors"""


class ConfigInvalid(HarnessError):
    """Contradictory or malformed run configuration"""


class BookExhausted(HarnessError):
    """Opening book has no unconsumed position left"""


class SessionError(HarnessError):
    """
    Failure attributable to one engine session

    Args:
        message: Error text
        engine: Display name of the faulting engine
    """

    def __init__(self, message: str, engine: str = ""):
        super().__init__(message)
        self.engine = engine


class HandshakeFailed(SessionError):
    """Engine did not complete uci/isready within the handshake timeout"""


class ProtocolError(SessionError):
    """Malformed or unexpected reply"""


class IllegalMove(ProtocolError):
    """bestmove token is not a valid UCI move"""


class TimeForfeit(SessionError):
    """Reply did not arrive within budget plus margin"""

    def __init__(self, message: str, engine: str = "", elapsed_ms: int = 0):
        super().__init__(message, engine)
        self.elapsed_ms = elapsed_ms


class Disconnect(SessionError):
    """Engine process exited or its pipes broke"""


class Cancelled(HarnessError):
    """Run-level cancellation reached a game in progress"""
