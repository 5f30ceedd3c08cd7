"""Per-tenant cache of calendar range reads.

The store owns the cache and drops a tenant's entries after every committed
write, whichever component made it. Entries also expire after a short TTL so
that writes committed by other processes sharing the database become
visible within that bound.
"""

import logging
import time
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Optional

from clinic_crm.scheduling.models import Appointment

logger = logging.getLogger(__name__)

CacheKey = tuple[str, datetime, datetime, Optional[str]]


class AppointmentViewCache:
    """Range reads keyed by ``(tenant_id, start, end, doctor_id)``.

    At most ``max_entries`` ranges are kept, least recently used evicted
    first. ``ttl_seconds <= 0`` disables caching.
    """

    def __init__(
        self,
        ttl_seconds: float = 5.0,
        max_entries: int = 256,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._timer = timer
        self._entries: OrderedDict[CacheKey, tuple[float, list[Appointment]]] = OrderedDict()
        self._generations: dict[str, int] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0 and self.max_entries > 0

    def generation(self, tenant_id: str) -> int:
        """Write counter for *tenant_id*; read it before loading from the store."""
        return self._generations.get(tenant_id, 0)

    def get(self, key: CacheKey) -> Optional[list[Appointment]]:
        item = self._entries.get(key)
        if item is None:
            return None
        stored_at, appointments = item
        if self._timer() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return appointments

    def put(self, key: CacheKey, appointments: list[Appointment], generation: int) -> None:
        """Cache a range read unless the tenant was written since *generation*."""
        if not self.enabled or generation != self.generation(key[0]):
            return
        self._entries[key] = (self._timer(), appointments)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, tenant_id: str) -> None:
        self._generations[tenant_id] = self.generation(tenant_id) + 1
        stale = [key for key in self._entries if key[0] == tenant_id]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("Invalidated %d cached calendar ranges for tenant %s", len(stale), tenant_id)

    def __len__(self) -> int:
        return len(self._entries)
