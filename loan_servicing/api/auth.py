"""
Authentication and system dependencies
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from ..audit import AuditTrail
from ..authorization import Actor
from ..clock import Clock, SystemClock
from ..config import LoanServicingConfig, get_config
from ..documents import DocumentStore, LocalDocumentStore
from ..exceptions import AuthorizationError
from ..loans import LoanManager
from ..payments import PaymentLedger
from ..storage import StorageInterface, create_storage
from ..verification import VerificationWorkflow


security = HTTPBearer(auto_error=False)


class LoanServicingSystem:
    """Loan servicing core with all components wired together"""

    def __init__(
        self,
        config: Optional[LoanServicingConfig] = None,
        storage: Optional[StorageInterface] = None,
        documents: Optional[DocumentStore] = None,
        clock: Optional[Clock] = None
    ):
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.storage = storage or create_storage(self.config.database_url)
        self.documents = documents or LocalDocumentStore(self.config.document_root)

        self.audit_trail = AuditTrail(
            self.storage, self.clock, enabled=self.config.enable_audit_logging
        )
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.clock, self.config)
        self.ledger = PaymentLedger(
            self.storage, self.audit_trail, self.loan_manager, self.clock, self.config
        )
        self.verification = VerificationWorkflow(
            self.storage, self.audit_trail, self.ledger, self.documents, self.clock, self.config
        )


_system: Optional[LoanServicingSystem] = None


def get_system() -> LoanServicingSystem:
    """Dependency returning the process-wide system, built on first use"""
    global _system
    if _system is None:
        _system = LoanServicingSystem()
    return _system


def create_access_token(
    user_id: str,
    role: str,
    config: Optional[LoanServicingConfig] = None,
    expires_in: timedelta = timedelta(hours=1)
) -> str:
    """Issue a bearer token carrying the sub and role claims"""
    config = config or get_config()
    payload = {
        "sub": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + expires_in
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: LoanServicingSystem = Depends(get_system)
) -> Actor:
    """Dependency that validates the bearer JWT and returns the calling actor"""
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        payload = jwt.decode(
            credentials.credentials,
            system.config.jwt_secret,
            algorithms=[system.config.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or not role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        return Actor.of(str(user_id), role)
    except AuthorizationError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Unknown role: {role}")
