import asyncio

import pytest

from helpdesk.tickets.errors import AllocationExhaustedError
from helpdesk.tickets.numbering import MAX_TICKET_SEQUENCE, TicketNumberAllocator, format_ticket_number
from helpdesk.tickets.repository import InMemoryTicketRepository


def test_format_ticket_number_zero_pads_sequence():
    assert format_ticket_number(1) == "TKT-000001"
    assert format_ticket_number(123456) == "TKT-123456"
    assert format_ticket_number(MAX_TICKET_SEQUENCE) == "TKT-999999"


def test_format_ticket_number_rejects_out_of_range_values():
    with pytest.raises(ValueError):
        format_ticket_number(0)
    with pytest.raises(ValueError):
        format_ticket_number(MAX_TICKET_SEQUENCE + 1)


@pytest.mark.asyncio
async def test_concurrent_allocations_never_collide():
    allocator = TicketNumberAllocator(InMemoryTicketRepository())

    numbers = await asyncio.gather(*(allocator.allocate() for _ in range(200)))

    assert len(set(numbers)) == 200
    assert sorted(numbers) == [format_ticket_number(value) for value in range(1, 201)]


@pytest.mark.asyncio
async def test_sequences_are_independent_by_name():
    repository = InMemoryTicketRepository()

    assert await repository.next_sequence("a") == 1
    assert await repository.next_sequence("a") == 2
    assert await repository.next_sequence("b") == 1


class FixedSequence:
    def __init__(self, value: int) -> None:
        self.value = value

    async def next_sequence(self, name: str) -> int:
        return self.value


@pytest.mark.asyncio
async def test_allocator_refuses_seven_digit_numbers():
    assert await TicketNumberAllocator(FixedSequence(MAX_TICKET_SEQUENCE)).allocate() == "TKT-999999"

    with pytest.raises(AllocationExhaustedError) as exc:
        await TicketNumberAllocator(FixedSequence(MAX_TICKET_SEQUENCE + 1)).allocate()

    assert exc.value.kind == "allocation_exhausted"
    assert "TKT-999999" in exc.value.message
