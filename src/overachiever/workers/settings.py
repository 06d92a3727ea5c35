"""arq worker settings module.

Import path for arq CLI: arq overachiever.workers.settings.WorkerSettings
"""

from __future__ import annotations

from overachiever.workers.scheduler import WorkerSettings

__all__ = ["WorkerSettings"]
