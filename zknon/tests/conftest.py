import asyncio
from decimal import Decimal
from typing import Optional

import pytest

from zknon.service import LedgerService
from zknon.settlement import SettlementError
from zknon.storage import InMemoryStorage


# Test constants
OWNER = "8hGDXBJqpCZvWaDcbvXykRSb1bKbbJ5Ji4c85ubYvkaA"
OTHER_OWNER = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
POOL_ADDRESS = "Fh3wQk8WZpRFGpXEdc1HE3Rn5KhUKRqGsxqNLEP5uKnq"
RECIPIENT = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


class FakeSettlementClient:
    """Settlement client whose outcome is chosen by the test."""

    def __init__(self, reference: str = "sig-confirmed-1", error: Optional[BaseException] = None):
        self.pool_address = POOL_ADDRESS
        self.reference = reference
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[tuple[str, Decimal]] = []
        self.closed = False

    def hold(self) -> asyncio.Event:
        """Block payouts until the returned event is set."""
        self.gate = asyncio.Event()
        return self.gate

    def is_valid_recipient(self, address: str) -> bool:
        return address != self.pool_address and not address.startswith("bad")

    async def transfer(self, recipient: str, amount: Decimal) -> str:
        self.calls.append((recipient, amount))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reference

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settlement():
    return FakeSettlementClient()


@pytest.fixture
def failing_settlement():
    return FakeSettlementClient(error=SettlementError("transaction rejected by the network"))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def service(storage, settlement):
    return LedgerService(storage=storage, settlement=settlement)


async def fund(service: LedgerService, amount: str = "100", owner: str = OWNER):
    """Issue an identifier for ``owner`` and deposit ``amount`` into it."""
    issued = await service.issue(owner)
    await service.record_deposit(owner, issued.identifier, Decimal(amount), "deposit-sig")
    return issued
