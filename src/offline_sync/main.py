from __future__ import annotations

import logging

from offline_sync.api.app import create_app
from offline_sync.config import settings
from offline_sync.engine import OfflineSyncEngine

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

app = create_app(OfflineSyncEngine(settings))
