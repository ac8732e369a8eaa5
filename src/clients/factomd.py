from __future__ import annotations

import logging
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from domain.income import Block, FactoidAddress, Transaction, TransactionId, TransactionOutput

logger = logging.getLogger(__name__)

# API docs: https://docs.factomprotocol.org/start/factomd-api
BLOCK_NOT_FOUND = -32008
TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})


class LedgerAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class UpstreamUnavailable(LedgerAPIError):
    pass


class LedgerNotFound(LedgerAPIError):
    pass


class FactomdClient:
    """factomd v2 JSON-RPC client for the two queries the scanner needs.

    Transient failures (connection errors, timeouts, 429 and 5xx) are retried inside the
    session with exponential backoff. Once the retries are used up the call fails with
    UpstreamUnavailable.
    """

    def __init__(
        self,
        *,
        host: str = "api.factomd.net",
        port: int = 443,
        path: str = "/v2",
        protocol: str = "https",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 1,
    ) -> None:
        self.url = f"{protocol}://{host}:{port}/{path.strip('/')}"
        self.timeout = timeout
        self._session = session or requests.Session()
        self._request_id = 0

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist=TRANSIENT_STATUSES,
            # JSON-RPC goes over POST and both methods are read only.
            allowed_methods=frozenset({"POST"}),
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get_tip_height(self) -> int:
        result = self._call("heights")
        height = result.get("directoryblockheight")
        if height is None:
            raise LedgerAPIError("factomd heights response missing directoryblockheight", payload=result)
        try:
            return int(height)
        except (TypeError, ValueError) as exc:
            raise LedgerAPIError("factomd heights response has invalid directoryblockheight", payload=result) from exc

    def get_block(self, height: int) -> Block:
        result = self._call("fblock-by-height", {"height": height})
        fblock = result.get("fblock")
        if not isinstance(fblock, dict):
            raise LedgerAPIError(f"factomd returned no factoid block for height {height}", payload=result)

        transactions: list[Transaction] = []
        for entry in fblock.get("transactions") or []:
            tx = self._parse_transaction(entry, height)
            if tx is not None:
                transactions.append(tx)
        return Block(height=height, transactions=transactions)

    def _call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self._request_id += 1
        body: dict[str, Any] = {"jsonrpc": "2.0", "id": self._request_id, "method": method}
        if params is not None:
            body["params"] = params

        try:
            response = self._session.request("POST", self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            error_payload: Any | None = None
            if resp is not None:
                try:
                    error_payload = resp.json()
                except ValueError:
                    error_payload = resp.text
            self._raise_rpc_error(method, error_payload, status_code)
            # The mounted Retry turns exhausted transient statuses into RetryError; this only
            # applies to sessions whose transport bypasses the mounted adapter.
            if status_code in TRANSIENT_STATUSES:
                raise UpstreamUnavailable(
                    f"factomd {method} failed", status_code=status_code, payload=error_payload
                ) from exc
            raise LedgerAPIError(f"factomd {method} failed", status_code=status_code, payload=error_payload) from exc
        except (requests.ConnectionError, requests.Timeout, requests.exceptions.RetryError) as exc:
            raise UpstreamUnavailable(f"factomd {method} unavailable at {self.url}") from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise LedgerAPIError(f"factomd {method} failed", status_code=status_code) from exc

        try:
            payload_raw = response.json()
        except ValueError as exc:
            raise LedgerAPIError("factomd returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload_raw, dict):
            raise LedgerAPIError("factomd returned unexpected payload type", payload=payload_raw)

        self._raise_rpc_error(method, payload_raw, response.status_code)

        result = payload_raw.get("result")
        if not isinstance(result, dict):
            raise LedgerAPIError(f"factomd {method} response missing result", payload=payload_raw)
        return result

    @staticmethod
    def _raise_rpc_error(method: str, payload: Any, status_code: int | None) -> None:
        if not isinstance(payload, dict):
            return
        err = payload.get("error")
        if not isinstance(err, dict):
            return
        message = err.get("message") or f"factomd {method} error"
        if err.get("code") == BLOCK_NOT_FOUND:
            raise LedgerNotFound(message, status_code=status_code, payload=payload)
        raise LedgerAPIError(message, status_code=status_code, payload=payload)

    @staticmethod
    def _parse_transaction(entry: Any, height: int) -> Transaction | None:
        try:
            inputs = entry.get("inputs") or []
            outputs = [
                TransactionOutput(
                    address=FactoidAddress(output.get("useraddress") or output["address"]),
                    amount=int(output["amount"]),
                )
                for output in entry.get("outputs") or []
            ]
            return Transaction(
                id=TransactionId(str(entry["txid"])),
                timestamp_millis=int(entry["millitimestamp"]),
                total_inputs=sum(int(item["amount"]) for item in inputs),
                outputs=outputs,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed transaction at height %d: %s", height, exc)
            return None


__all__ = ["FactomdClient", "LedgerAPIError", "LedgerNotFound", "UpstreamUnavailable"]
