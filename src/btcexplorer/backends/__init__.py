"""
Explorer backend implementations.

Available backends:
- EsploraExplorer: Esplora REST API (blockstream.info, mempool.space, self-hosted)
- ElectrumExplorer: Electrum server over a persistent TCP/TLS session
"""

from btcexplorer.backends.base import (
    AddressInfo,
    Explorer,
    TxHistoryEntry,
    UtxoInfo,
    UtxoSet,
)
from btcexplorer.backends.electrum import ElectrumExplorer
from btcexplorer.backends.esplora import EsploraExplorer
from btcexplorer.config import Settings, get_settings


def create_explorer(settings: Settings | None = None) -> Explorer:
    """Build the explorer selected by the settings (not yet connected)."""
    settings = settings or get_settings()
    if settings.backend == "electrum":
        server: dict = {}
        if settings.electrum_host or settings.electrum_port:
            server = {
                "host": settings.electrum_host,
                "port": settings.electrum_port,
                "protocol": settings.electrum_protocol,
            }
        return ElectrumExplorer(
            network=settings.network,
            irreversibility_threshold=settings.irreversibility_threshold,
            max_tx_per_key=settings.max_tx_per_key,
            session_params=settings.electrum_session,
            **server,
        )

    return EsploraExplorer(
        url=settings.esplora_url or None,
        network=settings.network,
        irreversibility_threshold=settings.irreversibility_threshold,
        max_tx_per_key=settings.max_tx_per_key,
        request_queue_params=settings.request_queue,
    )


__all__ = [
    "AddressInfo",
    "ElectrumExplorer",
    "EsploraExplorer",
    "Explorer",
    "TxHistoryEntry",
    "UtxoInfo",
    "UtxoSet",
    "create_explorer",
]
