class TimerError(Exception):
    """Base class for time-tracking failures"""

class PersistenceError(TimerError):
    """A ledger insert/update/delete/query failed"""

class RecoveryError(TimerError):
    """An orphaned session from a previous run could not be fetched or closed"""

class SyncFlushError(TimerError):
    """The blocking close request sent during unload failed or timed out"""
