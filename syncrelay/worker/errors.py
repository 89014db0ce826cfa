from __future__ import annotations


class PermanentJobError(RuntimeError):
    """Job cannot succeed on retry; goes straight to the dead-letter state."""
