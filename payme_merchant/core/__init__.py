"""Payme merchant protocol: authorization, envelope, state machine and storage."""
from .auth import CredentialValidator, MerchantCredentials, build_authorization_header
from .errors import PaymeError, TransientStoreError
from .merchant_service import PaymeMerchantService
from .state_machine import OrderPolicy, TransactionStateMachine, epoch_millis

__all__ = [
    "CredentialValidator",
    "MerchantCredentials",
    "OrderPolicy",
    "PaymeError",
    "PaymeMerchantService",
    "TransactionStateMachine",
    "TransientStoreError",
    "build_authorization_header",
    "epoch_millis",
]
