"""Entry point for `python -m crdbhistory`.

Usage:
    python -m crdbhistory
    CRDBHISTORY_CLUSTERS_CONFIG=clusters.yaml python -m crdbhistory
"""

from __future__ import annotations

import asyncio

from crdbhistory.app import main

asyncio.run(main())
