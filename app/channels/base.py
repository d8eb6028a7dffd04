"""Channel protocol interface.

The outbound gateway used by webhook replies and the delivery sweep.
"""

from typing import Protocol


class ChannelProtocol(Protocol):
    """Protocol for messaging channel adapters."""

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        """Verify webhook signature over the raw request body.

        Args:
            body: Raw request body
            signature: Signature header value (None if absent)

        Returns:
            True if signature is valid, False otherwise
        """
        ...

    async def reply(self, reply_token: str, text: str) -> None:
        """Reply to the event that issued reply_token (single attempt).

        Raises:
            DeliveryError: If the call fails
        """
        ...

    async def push(self, to: str, text: str) -> None:
        """Send text to one user.

        Raises:
            DeliveryError: If the call fails
        """
        ...

    async def multicast(self, to: list[str], text: str) -> None:
        """Send text to many users, chunked to the platform ceiling.

        Raises:
            DeliveryError: If any chunk fails
        """
        ...
