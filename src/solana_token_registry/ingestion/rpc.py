"""JSON-RPC request builders and a batched HTTP transport for Solana nodes."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_incrementing

from ..config.settings import RPCConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import DEFAULT_HEADERS, TOKEN_ACCOUNT_SIZE, TOKEN_PROGRAM_ADDRESS

RpcRequest = Dict[str, Any]
RpcResponse = Dict[str, Any]


class RpcTransportError(RuntimeError):
    """Raised when the RPC endpoint cannot be reached or answers garbage."""


def account_info_request(mint: str) -> RpcRequest:
    return {
        "jsonrpc": "2.0",
        "id": mint,
        "method": "getAccountInfo",
        "params": [mint, {"encoding": "jsonParsed"}],
    }


def latest_signature_request(mint: str) -> RpcRequest:
    return {
        "jsonrpc": "2.0",
        "id": mint,
        "method": "getSignaturesForAddress",
        "params": [mint, {"limit": 1}],
    }


def holders_request(mint: str) -> RpcRequest:
    """Enumerate token accounts of ``mint`` without transferring their data."""

    return {
        "jsonrpc": "2.0",
        "id": mint,
        "method": "getProgramAccounts",
        "params": [
            TOKEN_PROGRAM_ADDRESS,
            {
                "encoding": "base64",
                "dataSlice": {"offset": 0, "length": 0},
                "filters": [
                    {"dataSize": TOKEN_ACCOUNT_SIZE},
                    {"memcmp": {"offset": 0, "bytes": mint}},
                ],
            },
        ],
    }


def is_transient_http_error(exc: BaseException) -> bool:
    """Network failures, rate limiting and server errors are worth re-sending."""

    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def build_retrying(attempts: int, delay_seconds: float) -> Retrying:
    return Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_incrementing(start=delay_seconds, increment=delay_seconds),
        retry=retry_if_exception(is_transient_http_error),
        reraise=True,
    )


class RpcTransport:
    """Posts JSON-RPC payloads; a transport failure is always fatal to the caller."""

    def __init__(
        self,
        config: Optional[RPCConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config or get_app_config().rpc
        self._url = str(self._config.url)
        self._session = session or requests.Session()
        self._retrying = build_retrying(
            self._config.transport_retries, self._config.transport_retry_delay_seconds
        )
        self._logger = get_logger(__name__)

    def _post(self, payload: Any) -> Any:
        response = self._session.post(
            self._url,
            json=payload,
            headers=DEFAULT_HEADERS,
            timeout=self._config.request_timeout,
        )
        response.raise_for_status()
        return response.json()

    def _send(self, payload: Any) -> Any:
        METRICS.increment("rpc.http_requests")
        try:
            return self._retrying(self._post, payload)
        except requests.RequestException as exc:
            METRICS.increment("rpc.transport_failures")
            raise RpcTransportError(f"RPC request to {self._url} failed: {exc}") from exc
        except ValueError as exc:
            raise RpcTransportError(f"RPC endpoint {self._url} returned invalid JSON: {exc}") from exc

    def batch(self, requests_: Sequence[RpcRequest]) -> List[RpcResponse]:
        """Send several calls in one HTTP request; entries echo their request ``id``."""

        if not requests_:
            return []
        payload = self._send(list(requests_))
        if not isinstance(payload, list):
            raise RpcTransportError(
                f"Expected a batched RPC response from {self._url}, got {type(payload).__name__}"
            )
        METRICS.increment("rpc.calls", len(requests_))
        return [entry for entry in payload if isinstance(entry, dict)]

    def call(self, request: RpcRequest) -> RpcResponse:
        payload = self._send(request)
        if not isinstance(payload, dict):
            raise RpcTransportError(
                f"Expected a single RPC response from {self._url}, got {type(payload).__name__}"
            )
        METRICS.increment("rpc.calls")
        return payload


__all__ = [
    "RpcRequest",
    "RpcResponse",
    "RpcTransport",
    "RpcTransportError",
    "account_info_request",
    "build_retrying",
    "holders_request",
    "is_transient_http_error",
    "latest_signature_request",
]
