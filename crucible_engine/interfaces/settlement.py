"""Settlement protocol — the external layer that executes and reports state."""
from typing import Protocol

from ..models import ExternalState, SettlementOperation, SettlementReceipt


class SettlementClient(Protocol):
    """Opaque settlement layer.

    ``submit`` either returns a receipt or raises; the engine never looks
    inside the operation beyond its fields.
    """

    async def submit(self, operation: SettlementOperation) -> SettlementReceipt: ...

    async def fetch_state(self, owner: str) -> ExternalState: ...
