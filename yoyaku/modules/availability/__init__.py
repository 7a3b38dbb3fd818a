"""Availability blocks synced from the admin's calendar.

Slot derivation lives in :mod:`yoyaku.modules.availability.slots`; it is not
re-exported here because it depends on the reservations models.
"""

from yoyaku.modules.availability.models import AvailabilityBlock, BlockView, SyncResult
from yoyaku.modules.availability.sync import AvailabilitySyncService

__all__ = ["AvailabilityBlock", "AvailabilitySyncService", "BlockView", "SyncResult"]
