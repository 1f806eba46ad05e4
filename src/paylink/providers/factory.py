"""Build the configured value transfer engine."""

from __future__ import annotations

from paylink.config import Settings
from paylink.providers.base import ValueTransferEngine
from paylink.providers.relayer import RelayerTransferEngine
from paylink.providers.stub import StubTransferEngine


def build_transfer_engine(settings: Settings) -> ValueTransferEngine:
    """Create the engine named by PAYLINK_ENGINE.

    Raises:
        ValueError: relayer engine selected without PAYLINK_RELAYER_URL.
    """
    if settings.engine == "relayer":
        if not settings.relayer_url:
            raise ValueError("PAYLINK_RELAYER_URL is required when PAYLINK_ENGINE=relayer")
        return RelayerTransferEngine(
            settings.relayer_url, timeout_seconds=settings.relayer_timeout_seconds
        )
    return StubTransferEngine()
