"""Out-of-band code delivery sinks."""

import logging
import re

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^\+\d{10,15}$")


def is_valid_address(address: str) -> bool:
    """Check an E.164-style phone number: ``+`` followed by 10-15 digits."""
    return bool(address) and ADDRESS_PATTERN.match(address) is not None


def mask_address(address: str) -> str:
    """Keep only the last four digits for logs."""
    if len(address) <= 4:
        return "*" * len(address)
    return "*" * (len(address) - 4) + address[-4:]


class CodeDelivery:
    """Delivers a one-time code to an address. Implementations must not log the code."""

    async def deliver(self, address: str, code: str) -> None:
        raise NotImplementedError


class LoggingCodeDelivery(CodeDelivery):
    """Development sink: records that a code went out without revealing it."""

    async def deliver(self, address: str, code: str) -> None:
        logger.info(f"Delivered one-time code to {mask_address(address)}")
