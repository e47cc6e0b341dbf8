"""
Fixture data for a fresh MedChain snapshot.

The seed dataset lives in data/seed.json next to this module so a deployment
can point FIXTURE_PATH at its own file without touching the code.
"""

import json
import logging
import pathlib
from datetime import datetime, timezone
from typing import Optional, Union

from .models import Snapshot

logger = logging.getLogger(__name__)

DEFAULT_FIXTURE = pathlib.Path(__file__).parent.resolve() / 'data' / 'seed.json'


def load_fixture(path: Optional[Union[str, pathlib.Path]] = None,
                 now: Optional[datetime] = None) -> Snapshot:
    """Build the initial snapshot from a JSON fixture file"""
    fixture_path = pathlib.Path(path) if path else DEFAULT_FIXTURE
    with fixture_path.open(encoding='utf-8') as fh:
        data = json.load(fh)

    now = now or datetime.now(timezone.utc)
    if 'accessLogs' not in data and 'access_logs' not in data:
        data['accessLogs'] = [
            {'user': 'System', 'time': now.strftime('%H:%M:%S'), 'action': 'AI Engine Initialized'}
        ]
    snapshot = Snapshot.model_validate(data)
    logger.info(
        "Loaded fixture %s: %d inventory items, %d patients, %d requests",
        fixture_path.name, len(snapshot.inventory), len(snapshot.patients), len(snapshot.requests)
    )
    return snapshot
