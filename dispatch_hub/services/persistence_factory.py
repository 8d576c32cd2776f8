from __future__ import annotations

from functools import lru_cache

from dispatch_hub.config import settings
from dispatch_hub.services.http_scan_persistence import HttpScanPersistence
from dispatch_hub.services.local_scan_persistence import LocalScanPersistence
from dispatch_hub.services.scan_persistence import ScanPersistence


@lru_cache(maxsize=1)
def get_scan_persistence() -> ScanPersistence:
    backend = settings.scan_persistence.strip().lower()
    if backend == 'http':
        return HttpScanPersistence()
    return LocalScanPersistence()
