"""JSON-RPC settlement client with endpoint fallback."""
from __future__ import annotations

import logging
import ssl
from dataclasses import asdict
from typing import Any

import aiohttp
import certifi

from ..config import SettlementConfig
from ..errors import SettlementFailed
from ..models import ExternalState, SettlementOperation, SettlementReceipt

logger = logging.getLogger(__name__)


class JsonRpcSettlementClient:
    """Talks to the settlement gateway over JSON-RPC 2.0.

    Calls rotate through ``rpc_endpoints`` on failure and stick to the first
    endpoint that answers.
    """

    def __init__(self, config: SettlementConfig) -> None:
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.current_rpc_index = 0
        self._request_id = 0

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Make an RPC call, falling back to the next endpoint on error."""
        if not self.endpoints:
            raise RuntimeError("No settlement RPC endpoints configured")

        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            rpc_url = self.endpoints[rpc_index]

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.post(
                        rpc_url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        result = await response.json()
                        if "error" in result:
                            raise RuntimeError(f"RPC Error: {result['error']}")

                        if rpc_index != self.current_rpc_index:
                            logger.info("Switched to settlement endpoint: %s", rpc_url)
                            self.current_rpc_index = rpc_index

                        return result.get("result", {})
            except Exception as e:
                last_error = e
                logger.warning("Settlement endpoint %s failed: %s", rpc_url, e)
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")

        raise RuntimeError(f"All RPC endpoints failed. Last error: {last_error}")

    async def submit(self, operation: SettlementOperation) -> SettlementReceipt:
        """Submit an operation; raises SettlementFailed unless it succeeded."""
        try:
            result = await self.rpc_call("crucible_submitOperation", [asdict(operation)])
        except RuntimeError as e:
            raise SettlementFailed(cause=e, op_id=operation.op_id) from e

        receipt = SettlementReceipt(
            op_id=result.get("opId", operation.op_id),
            success=bool(result.get("success", False)),
            signature=result.get("signature", ""),
            balances=dict(result.get("balances", {})),
            error=result.get("error", ""),
        )
        if not receipt.success:
            raise SettlementFailed(
                f"Settlement rejected {operation.action}: {receipt.error or 'unknown error'}",
                op_id=operation.op_id,
            )
        logger.info("Settled %s (%s) signature=%s", operation.action, operation.op_id, receipt.signature)
        return receipt

    async def fetch_state(self, owner: str) -> ExternalState:
        """Authoritative state for ``owner``; raises SettlementFailed on error."""
        try:
            result = await self.rpc_call("crucible_getState", [owner])
        except RuntimeError as e:
            raise SettlementFailed(cause=e, owner=owner) from e

        return ExternalState(
            owner=owner,
            crucibles=tuple(result.get("crucibles", [])),
            wrap_holdings=tuple(result.get("wrapHoldings", [])),
            lp_positions=tuple(result.get("lpPositions", [])),
            leveraged_positions=tuple(result.get("leveragedPositions", [])),
            as_of=float(result.get("asOf", 0.0)),
        )
