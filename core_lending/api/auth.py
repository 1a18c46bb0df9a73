"""
System wiring and authentication dependencies
"""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..audit import AuditTrail
from ..auth import AuthContext, BranchAuthorization, TokenResolver
from ..config import LendingConfig, get_config
from ..default_sweep import DefaultSweep
from ..directory import AccountDirectory, BranchDirectory, CustomerDirectory
from ..loans import LoanLifecycle
from ..storage import StorageInterface, create_storage
from ..transactions import TransactionProcessor


class LendingSystem:
    """Lending engine with all components initialized"""

    def __init__(self, cfg: Optional[LendingConfig] = None, storage: Optional[StorageInterface] = None):
        self.config = cfg or get_config()

        # Initialize storage
        if storage is not None:
            self.storage = storage
        elif self.config.use_sqlite:
            self.storage = create_storage(self.config.database_url)
        else:
            self.storage = create_storage("memory://")

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.authorization = BranchAuthorization()
        self.token_resolver = TokenResolver(
            secret=self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
            expiry_hours=self.config.jwt_expiry_hours
        )

        # Directories and money movement
        self.branches = BranchDirectory(self.storage)
        self.customers = CustomerDirectory(self.storage)
        self.accounts = AccountDirectory(self.storage)
        self.transaction_processor = TransactionProcessor(self.storage, self.accounts, self.authorization)

        # Loan engine
        self.lifecycle = LoanLifecycle(
            self.storage, self.customers, self.accounts, self.branches,
            self.transaction_processor, self.audit_trail,
            authorization=self.authorization, cfg=self.config
        )
        self.default_sweep = DefaultSweep(self.lifecycle)


# Global lending system instance, created on first use
lending_system: Optional[LendingSystem] = None


# Dependency to get lending system
def get_lending_system() -> LendingSystem:
    global lending_system
    if lending_system is None:
        lending_system = LendingSystem()
    return lending_system


security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: LendingSystem = Depends(get_lending_system)
) -> AuthContext:
    """Dependency that validates the bearer token and returns the caller's AuthContext"""
    token = credentials.credentials if credentials else None
    return system.token_resolver.resolve(token)
