"""
Sync Repositories Package
=========================
Data access for sources, secrets, runs, the item ledger and cron secrets.
"""

from .cron_secret_repository import CronSecretRepository
from .ledger_repository import LedgerRepository
from .run_repository import RunRepository
from .source_repository import SourceRepository, SourceSecretRepository

__all__ = [
    "CronSecretRepository",
    "LedgerRepository",
    "RunRepository",
    "SourceRepository",
    "SourceSecretRepository",
]
