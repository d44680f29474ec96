"""HTTP clients for the settlement ledger and the reputation service."""

from task_escrow_service.clients.ledger_client import LedgerClient
from task_escrow_service.clients.reputation_client import ReputationClient

__all__ = ["LedgerClient", "ReputationClient"]
