"""Value transfer engine adapters."""

from paylink.providers.base import (
    ClaimOutcomeUnknown,
    ClaimReceipt,
    ClaimStatusResult,
    TerminalFailure,
    TransientFailure,
    ValueTransferEngine,
)
from paylink.providers.factory import build_transfer_engine
from paylink.providers.relayer import RelayerTransferEngine
from paylink.providers.stub import StubTransferEngine

__all__ = [
    "ValueTransferEngine",
    "ClaimReceipt",
    "ClaimStatusResult",
    "TransientFailure",
    "TerminalFailure",
    "ClaimOutcomeUnknown",
    "StubTransferEngine",
    "RelayerTransferEngine",
    "build_transfer_engine",
]
