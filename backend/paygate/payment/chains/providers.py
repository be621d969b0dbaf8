"""
EVM RPC endpoint pool.

Endpoints are tried in configured order. Each is probed with ``eth_chainId``
before its first use, and an endpoint serving a different chain is never used.
One that fails a call is parked until ``recheck_seconds`` have passed, then
probed again before it is trusted. Verification runs in worker threads, so
the pool is lock-protected.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import List, Optional

import requests
from web3 import Web3

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT = 10  # seconds
PROBE_TIMEOUT = 3  # seconds


class RPCProviderError(Exception):
    """No usable RPC endpoint."""


@dataclass
class EndpointStatus:
    # Unknown until the first eth_chainId probe
    healthy: bool = False
    checked_at: float = 0.0
    failures: int = 0
    last_error: Optional[str] = None

    def record(self, healthy: bool, error: Optional[str] = None) -> None:
        self.healthy = healthy
        self.checked_at = time.time()
        self.last_error = error
        self.failures = 0 if healthy else self.failures + 1


class ProviderManager:
    """Failover pool of RPC endpoints pinned to one chain id."""

    def __init__(
        self,
        rpc_urls: List[str],
        chain_id: int,
        timeout: int = DEFAULT_RPC_TIMEOUT,
        recheck_seconds: int = 60,
    ) -> None:
        """
        Args:
            rpc_urls: Endpoints in order of preference
            chain_id: Chain id every endpoint must serve
            timeout: Per-request timeout in seconds
            recheck_seconds: How long a failed endpoint is parked before it is probed again
        """
        self.rpc_urls = [url for url in rpc_urls if url]
        if not self.rpc_urls:
            raise RPCProviderError(f"No RPC URLs configured for chain {chain_id}")
        self.chain_id = chain_id
        self.timeout = timeout
        self.recheck_seconds = recheck_seconds
        self._status = {url: EndpointStatus() for url in self.rpc_urls}
        self._current = 0
        self._web3: Optional[Web3] = None
        self._lock = threading.Lock()

    @property
    def current_url(self) -> str:
        return self.rpc_urls[self._current]

    def _probe(self, url: str) -> bool:
        """``eth_chainId`` round trip; records and returns whether ``url`` is usable."""
        status = self._status[url]
        payload = {"jsonrpc": "2.0", "id": 1, "method": "eth_chainId", "params": []}
        try:
            response = requests.post(url, json=payload, timeout=PROBE_TIMEOUT)
        except requests.exceptions.RequestException as e:
            status.record(False, str(e))
            logger.warning(f"RPC probe of {url} failed: {e}")
            return False
        if response.status_code != 200:
            status.record(False, f"HTTP {response.status_code}")
            return False
        try:
            served = int(response.json()["result"], 16)
        except (KeyError, TypeError, ValueError) as e:
            status.record(False, f"bad eth_chainId response: {e}")
            return False
        if served != self.chain_id:
            logger.warning(f"RPC {url} serves chain {served}, expected {self.chain_id}")
            status.record(False, f"wrong chain id {served}")
            return False
        status.record(True)
        return True

    def _usable(self, url: str) -> bool:
        status = self._status[url]
        if status.healthy:
            return True
        if time.time() - status.checked_at < self.recheck_seconds:
            return False
        return self._probe(url)

    def _select(self) -> Optional[str]:
        count = len(self.rpc_urls)
        for offset in range(count):
            idx = (self._current + offset) % count
            if self._usable(self.rpc_urls[idx]):
                self._current = idx
                return self.rpc_urls[idx]

        # Everything is parked: probe all of them now rather than fail outright
        logger.warning(f"All RPC endpoints for chain {self.chain_id} are parked, probing")
        for idx, url in enumerate(self.rpc_urls):
            if self._probe(url):
                self._current = idx
                return url
        return None

    def get_web3(self) -> Web3:
        """
        Web3 bound to the first usable endpoint.

        Raises:
            RPCProviderError: no endpoint is usable
        """
        with self._lock:
            if self._web3 is not None and self._status[self.current_url].healthy:
                return self._web3
            url = self._select()
            if url is None:
                errors = {u: s.last_error for u, s in self._status.items()}
                raise RPCProviderError(f"No usable RPC endpoint for chain {self.chain_id}: {errors}")
            self._web3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": self.timeout}))
            logger.info(f"Using RPC {url} for chain {self.chain_id}")
            return self._web3

    def mark_endpoint_unhealthy(self, url: Optional[str] = None, error: Optional[str] = None) -> None:
        """Park an endpoint (default: the current one) after a failed call."""
        with self._lock:
            url = url or self.current_url
            status = self._status.get(url)
            if status is None:
                return
            status.record(False, error or "call failed")
            logger.warning(f"Parked RPC {url}: {error}")
            if url == self.current_url:
                self._web3 = None

    def get_status(self) -> dict:
        with self._lock:
            return {
                url: {"healthy": s.healthy, "failures": s.failures, "last_error": s.last_error}
                for url, s in self._status.items()
            }
