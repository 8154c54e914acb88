from .config import FlowSettings, load_flow_settings
from .flows import FlowMachine
from .gateway import HttpLedgerGateway, LedgerGateway
from .models import FinalityEvent, FlowResult, PendingTransaction, Prompt, ResultStatus, Session
from .service import FlowService
from .sessions import SessionStore
from .state_machine import FlowKind, FlowStep
from .tracker import ExecutionTracker
from .wallets import HttpWalletClient, SignerHandle, WalletCollaborator

__all__ = [
    "ExecutionTracker",
    "FinalityEvent",
    "FlowKind",
    "FlowMachine",
    "FlowResult",
    "FlowService",
    "FlowSettings",
    "FlowStep",
    "HttpLedgerGateway",
    "HttpWalletClient",
    "LedgerGateway",
    "PendingTransaction",
    "Prompt",
    "ResultStatus",
    "Session",
    "SessionStore",
    "SignerHandle",
    "WalletCollaborator",
    "load_flow_settings",
]
