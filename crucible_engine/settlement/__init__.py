from .client import JsonRpcSettlementClient

__all__ = ["JsonRpcSettlementClient"]
