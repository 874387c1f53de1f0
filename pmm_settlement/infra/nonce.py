"""
Per-network nonce sequencer for EVM payouts.

Keeps one ManagedSigner per (network, account) so concurrent transfers on the
same network serialize nonce allocation through a single asyncio.Lock, while
different networks proceed independently.

Usage:
    sequencer = NonceSequencer(signer_factory=Web3SignerFactory(settings, rpc))
    signer = await sequencer.get("ethereum")
    nonce = await signer.next_nonce()
    ...
    await sequencer.reset("ethereum")   # after a failed send

Thread Safety:
    asyncio only. The cache map is guarded by `_guard`; nonce allocation by the
    signer's own lock. Callers must not assume a cached signer is theirs alone.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from eth_account import Account
from web3 import Web3

from pmm_settlement.infra.async_rpc import AsyncRpc

log = logging.getLogger("pmm_settlement")


class ManagedSigner:
    """
    A wallet bound to one network with a locally sequenced nonce.

    next_nonce() returns max(local counter, chain pending count) and then
    advances the local counter, so allocations are strictly increasing per
    call even when callers race.
    """

    def __init__(
        self,
        network_id: str,
        address: str,
        fetch_chain_nonce: Callable[[], Awaitable[int]],
        account: Any = None,
        web3: Optional[Web3] = None,
    ) -> None:
        self.network_id = network_id
        self.address = address
        self.account = account
        self.web3 = web3
        self._fetch_chain_nonce = fetch_chain_nonce
        self._lock = asyncio.Lock()
        self._next: Optional[int] = None
        self.created_at_ms = int(time.time() * 1000)
        self.refreshed_at_ms = 0

    @property
    def cached_nonce(self) -> Optional[int]:
        return self._next

    async def next_nonce(self) -> int:
        async with self._lock:
            chain = await self._fetch_chain_nonce()
            if self._next is None or chain > self._next:
                self._next = chain
            nonce = self._next
            self._next += 1
            return nonce

    async def refresh(self) -> int:
        """
        Re-read the chain pending nonce.

        Only moves the local counter forward: nonces allocated here but not yet
        broadcast must not be handed out twice. Use NonceSequencer.reset() to
        recover from a counter that ran ahead of the chain.
        """
        async with self._lock:
            chain = await self._fetch_chain_nonce()
            if self._next is None or chain > self._next:
                self._next = chain
            self.refreshed_at_ms = int(time.time() * 1000)
            return self._next

    def sign_transaction(self, tx: Dict[str, Any]) -> Any:
        if self.account is None:
            raise RuntimeError(f"Signer for {self.network_id} has no private key")
        return self.account.sign_transaction(tx)


class Web3SignerFactory:
    """Builds ManagedSigners backed by web3 HTTP providers and an eth_account key."""

    def __init__(self, rpc_urls: Dict[str, str], private_key: Optional[str], rpc: AsyncRpc) -> None:
        self._rpc_urls = rpc_urls
        self._private_key = private_key
        self._rpc = rpc

    def __call__(self, network_id: str) -> ManagedSigner:
        url = self._rpc_urls.get(network_id)
        if not url:
            raise ValueError(f"No RPC URL configured for network {network_id}")
        if not self._private_key:
            raise RuntimeError("Missing PMM_EVM_PRIVATE_KEY")

        w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": self._rpc.timeout}))
        account = Account.from_key(self._private_key)
        address = account.address
        rpc = self._rpc

        async def fetch_chain_nonce() -> int:
            return await rpc.read(lambda: w3.eth.get_transaction_count(address, "pending"))

        return ManagedSigner(network_id, address, fetch_chain_nonce, account=account, web3=w3)


class NonceSequencer:
    def __init__(
        self,
        signer_factory: Callable[[str], ManagedSigner],
        account_label: str = "pmm",
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._factory = signer_factory
        self._account_label = account_label
        self._log = log_event or self._default_log
        # map "{network}-{account}" -> signer
        self._signers: Dict[str, ManagedSigner] = {}
        # guard for the map
        self._guard = asyncio.Lock()

        self._stats = {
            "created": 0,
            "resets": 0,
            "refreshes": 0,
            "refresh_failures": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if kwargs.get("error") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}))

    def _key(self, network_id: str) -> str:
        return f"{network_id}-{self._account_label}"

    @property
    def size(self) -> int:
        return len(self._signers)

    async def get(self, network_id: str) -> ManagedSigner:
        """Return the cached signer for the network, constructing it on first use."""
        key = self._key(network_id)
        async with self._guard:
            signer = self._signers.get(key)
            if signer is None:
                signer = self._factory(network_id)
                self._signers[key] = signer
                self._stats["created"] += 1
                self._log("nonce_signer_created", network_id=network_id, address=signer.address)
            return signer

    async def reset(self, network_id: str) -> bool:
        """Evict the cached signer so the next get() re-derives the on-chain nonce."""
        key = self._key(network_id)
        async with self._guard:
            removed = self._signers.pop(key, None) is not None
        if removed:
            self._stats["resets"] += 1
            self._log("nonce_signer_reset", network_id=network_id)
        return removed

    async def clear_all(self) -> None:
        async with self._guard:
            self._signers.clear()
        self._log("nonce_signers_cleared")

    async def refresh_all(self) -> Dict[str, bool]:
        """
        Re-read the chain nonce for every cached signer concurrently.

        A failing network is logged and reported as False; it never prevents
        the others from refreshing.
        """
        async with self._guard:
            entries: List[tuple] = list(self._signers.items())
        if not entries:
            return {}

        results = await asyncio.gather(
            *(signer.refresh() for _, signer in entries),
            return_exceptions=True,
        )
        outcome: Dict[str, bool] = {}
        for (key, signer), result in zip(entries, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                outcome[key] = False
                self._stats["refresh_failures"] += 1
                self._log("nonce_refresh_failed", network_id=signer.network_id, error=str(result))
            else:
                outcome[key] = True
                self._stats["refreshes"] += 1
        return outcome

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "cached": len(self._signers)}
