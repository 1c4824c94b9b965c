"""Models package."""

from .account import Account
from .credit_ledger import LedgerEntry
from .sandbox_session import SandboxSession
