"""Notification Decision Engine — Now / Later / Never for every incoming event."""

__version__ = "1.0.0"
