"""Notifier protocol — where keeper alerts and logs are delivered."""
from typing import Protocol


class Notifier(Protocol):
    """Abstract interface for sending keeper notifications."""

    async def send_alert(self, message: str, subject: str = "") -> bool: ...

    async def send_log(self, message: str, silent: bool = True) -> bool: ...
