"""
Bitaxe Dashboard - Aggregation Proxy
======================================
Fans out one concurrent HTTP call per configured endpoint and collects one
result per endpoint, whatever happened to the individual calls.

Failure handling:
    non-2xx status, network error, unparsable body
        -> that endpoint's result becomes
           {"id": name, "hostname": name, "status": "Error", "message": ...}
    the other endpoints are unaffected, and fetch_all only returns after every
    call has finished.

The same shared httpx.AsyncClient also serves the single-instance proxy
routes and the JSON-RPC calls to blockchain nodes.

Usage:
    aggregator = Aggregator(httpx.AsyncClient())
    results = await aggregator.fetch_all(snapshot.instances, snapshot.path_for)
    results.get("My Axe")          # result for one endpoint, by name
    results.to_json()              # list in configuration order
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Callable, Iterable

import httpx

from dashboard.config import CryptoNode, Endpoint, RpcCredentials
from dashboard.errors import UpstreamError

logger = logging.getLogger(__name__)


RPC_CLIENT_ID = "bitaxe-dashboard"
NODE_RPC_METHODS = ("getblockchaininfo", "getnettotals", "getbalance", "getnetworkinfo")


@dataclass(frozen=True)
class EndpointResult:
    """Outcome of one upstream call, tagged with the endpoint's name."""
    name: str
    payload: Any = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.message is None

    def to_json(self) -> dict:
        if not self.ok:
            return {"id": self.name, "hostname": self.name, "status": "Error", "message": self.message}
        if isinstance(self.payload, dict):
            return {**self.payload, "id": self.name}
        return {"id": self.name, "data": self.payload}


class ResultList(Sequence):
    """
    Results in configuration order, also addressable by endpoint name.
    """

    def __init__(self, results: Iterable[EndpointResult]):
        self._results = list(results)
        self._by_name = {result.name: result for result in self._results}

    def __getitem__(self, index):
        return self._results[index]

    def __len__(self) -> int:
        return len(self._results)

    def get(self, name: str) -> EndpointResult | None:
        return self._by_name.get(name)

    @property
    def errors(self) -> list[EndpointResult]:
        return [result for result in self._results if not result.ok]

    def to_json(self) -> list[dict]:
        return [result.to_json() for result in self._results]


class Aggregator:
    """
    Outbound HTTP for the dashboard.

    Attributes:
        client: Shared httpx.AsyncClient, owned by the application lifespan.
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self.client = client

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Perform one request and check only its status. The body is not read
        as JSON, so device commands answering with plain text still succeed.

        Raises:
            UpstreamError: On network failure, an invalid URL or a non-2xx
                           status (status_code is set for non-2xx).
        """
        try:
            response = await self.client.request(method, url, **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise UpstreamError(f"{type(e).__name__}: {e}" if str(e) else type(e).__name__) from e

        if not response.is_success:
            raise UpstreamError(
                f"{response.status_code} {response.reason_phrase}".strip(),
                status_code=response.status_code,
            )
        return response

    async def request_json(self, method: str, url: str, **kwargs) -> Any:
        """
        Perform one request and decode its JSON body.

        Raises:
            UpstreamError: As request(), or when the body is not JSON.
        """
        response = await self.request(method, url, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"Invalid JSON from {url}: {e}") from e

    async def fetch_one(self, endpoint: Endpoint, path: str) -> EndpointResult:
        """Fetch path from one endpoint, converting any failure into a result."""
        try:
            payload = await self.request_json("GET", endpoint.url + path)
        except UpstreamError as e:
            logger.warning("Error fetching data from %s (%s): %s", endpoint.name, endpoint.url, e.message)
            return EndpointResult(endpoint.name, message=e.message)
        return EndpointResult(endpoint.name, payload=payload)

    async def fetch_all(self, endpoints: Sequence[Endpoint],
                        path_for_kind: Callable[[str], str],
                        kind: str = "instanceInfo") -> ResultList:
        """
        Fetch the same capability from every endpoint concurrently.

        Args:
            endpoints:     Named endpoints, in configuration order.
            path_for_kind: Resolves a capability to its path (demo aware),
                           usually ConfigSnapshot.path_for.
            kind:          Capability to fetch.

        Returns:
            Exactly one result per endpoint, in the order given.
        """
        path = path_for_kind(kind)
        outcomes = await asyncio.gather(
            *(self.fetch_one(endpoint, path) for endpoint in endpoints),
            return_exceptions=True,
        )

        results = []
        for endpoint, outcome in zip(endpoints, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error("Unexpected error fetching %s: %r", endpoint.name, outcome)
                outcome = EndpointResult(endpoint.name, message=str(outcome) or type(outcome).__name__)
            results.append(outcome)
        return ResultList(results)

    # -- JSON-RPC (blockchain nodes) ---------------------------------------------

    async def call_rpc(self, creds: RpcCredentials, method: str, params: list | None = None) -> Any:
        """
        Call a JSON-RPC 2.0 method on a node with HTTP basic auth.

        Raises:
            UpstreamError: On transport failure, empty or unparsable reply, or
                           an RPC-level error.
        """
        user, _, password = creds.auth.partition(":")
        body = {"jsonrpc": "2.0", "id": RPC_CLIENT_ID, "method": method, "params": params or []}
        try:
            response = await self.client.post(
                f"http://{creds.host}:{creds.port}/", json=body, auth=(user, password),
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise UpstreamError(f"RPC request error: {e}") from e

        if not response.content:
            # Nodes close the connection without a body when rpcauth is wrong.
            raise UpstreamError(
                "Empty response from RPC server. Check RPC credentials (rpcauth) "
                f"and rpcallowip. Status: {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(f"Failed to parse RPC response: {e}") from e

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamError(f"RPC error from {method}: {message}")
        return data.get("result") if isinstance(data, dict) else data

    async def fetch_node(self, node: CryptoNode) -> dict:
        base = {"id": node.name, "nodeId": node.node_id, "nodeType": node.node_type}
        if node.rpc is None:
            return {**base, "status": "Error", "message": f"No RPC credentials configured for node {node.node_id}"}

        try:
            blockchain_info, net_totals, balance, network_info = await asyncio.gather(
                *(self.call_rpc(node.rpc, method) for method in NODE_RPC_METHODS)
            )
        except UpstreamError as e:
            logger.warning("Failed to fetch data for node %s: %s", node.node_id, e.message)
            return {**base, "status": "Error", "message": e.message}

        return {
            **base,
            "nodeAlgo": node.algo,
            "status": "online",
            "blockchainInfo": blockchain_info,
            "networkTotals": net_totals,
            "balance": balance,
            "networkInfo": network_info,
        }

    async def fetch_nodes(self, nodes: Sequence[CryptoNode], display_fields: list) -> list[dict]:
        """Query every node concurrently; one entry per node, failures included."""
        outcomes = await asyncio.gather(
            *(self.fetch_node(node) for node in nodes),
            return_exceptions=True,
        )

        results = []
        for node, outcome in zip(nodes, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error("Unexpected error querying node %s: %r", node.node_id, outcome)
                outcome = {
                    "id": node.name, "nodeId": node.node_id, "nodeType": node.node_type,
                    "status": "Error", "message": str(outcome) or type(outcome).__name__,
                }
            elif outcome["status"] != "Error":
                outcome["displayFields"] = display_fields
            results.append(outcome)
        return results
