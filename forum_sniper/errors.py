"""
Forum Sniper - Error Taxonomy
"""


class SniperError(Exception):
    """Base class for all Forum Sniper errors"""


class ProbeTimeout(SniperError):
    """A probe exceeded its hard deadline"""

    def __init__(self, seconds: float):
        super().__init__(f"Timeout limit of {seconds:g}s exceeded")
        self.seconds = seconds


class ProbeCancelled(SniperError):
    """The engine noticed its deadline was cancelled between two steps"""


class StoreError(SniperError):
    """Persistent storage failed"""


class TargetNotFound(SniperError):
    def __init__(self, target_id: str):
        super().__init__(f"Target not found: {target_id}")
        self.target_id = target_id


class InvalidTransition(SniperError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Invalid status transition {current} -> {requested}")
        self.current = current
        self.requested = requested
