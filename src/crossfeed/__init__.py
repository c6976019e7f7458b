"""crossfeed: polls chat and issue-tracker backends into one merged feed."""

__version__ = "0.1.0"
