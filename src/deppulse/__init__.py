"""deppulse - maintenance health scoring for open-source repositories."""

__version__ = "0.3.0"
