"""Tests for the seat ledger."""
import asyncio

import pytest
from sqlalchemy import text

from eventhub.errors import (
    InsufficientInventoryError, NotFoundError, ValidationError,
)
from eventhub.model import inventory


async def test_reserve_decrements(db, world):
    left = await inventory.reserve(db, world.regular.id, 3)
    assert left == 7
    assert await inventory.available(db, world.regular.id) == 7


async def test_reserve_exact_remaining_reaches_zero(db, world):
    assert await inventory.reserve(db, world.vip.id, 2) == 0
    with pytest.raises(InsufficientInventoryError) as exc:
        await inventory.reserve(db, world.vip.id, 1)
    assert exc.value.available == 0
    assert await inventory.available(db, world.vip.id) == 0


async def test_reserve_too_many_leaves_seats_alone(db, world):
    with pytest.raises(InsufficientInventoryError):
        await inventory.reserve(db, world.vip.id, 3)
    assert await inventory.available(db, world.vip.id) == 2


async def test_seeded_rows_survive_a_rolled_back_reserve(db, world):
    with pytest.raises(InsufficientInventoryError):
        await inventory.reserve(db, world.vip.id, 3)
    # the failed reserve rolled the test session back; fixture rows are
    # detached from it and keep their loaded columns
    assert world.vip.name == "VIP"
    assert await inventory.reserve(db, world.vip.id, 2) == 0


async def test_release_has_no_upper_bound(db, world):
    assert await inventory.release(db, world.vip.id, 5) == 7


async def test_unknown_ticket(db, world):
    with pytest.raises(NotFoundError):
        await inventory.reserve(db, 9999, 1)
    with pytest.raises(NotFoundError):
        await inventory.available(db, 9999)


@pytest.mark.parametrize("qty", [0, -1, True])
async def test_bad_quantity(db, world, qty):
    with pytest.raises(ValidationError):
        await inventory.reserve(db, world.regular.id, qty)


async def test_concurrent_reserves_never_oversell(opener, world):
    """Ten buyers race for ten Regular seats in chunks of three."""

    async def attempt():
        async with opener() as db:
            return await inventory.reserve(db, world.regular.id, 3)

    results = await asyncio.gather(
        *(attempt() for _ in range(10)), return_exceptions=True
    )
    ok = [r for r in results if isinstance(r, int)]
    failed = [r for r in results
              if isinstance(r, InsufficientInventoryError)]
    assert len(ok) == 3
    assert len(failed) == 7

    async with opener() as db:
        assert await inventory.available(db, world.regular.id) == 1


async def test_conditional_update_stops_oversell_without_gate(
    engine_bundle, world
):
    """Two open database transactions race for the last two VIP seats with
    no gate in front: the guarded UPDATE lets exactly one through."""
    _, SessionAsync, _ = engine_bundle
    vip_id = world.vip.id

    async def take():
        async with SessionAsync() as session:
            async with session.begin():
                return await inventory.take_seats(session, vip_id, 2)

    results = await asyncio.gather(take(), take(), return_exceptions=True)
    assert sorted(r for r in results if isinstance(r, int)) == [0]
    [lost] = [r for r in results if isinstance(r, Exception)]
    assert isinstance(lost, InsufficientInventoryError)
    assert lost.available == 0

    async with SessionAsync() as session:
        async with session.begin():
            seats = (await session.execute(
                text("SELECT available_seats FROM tickets WHERE id = :id"),
                {"id": vip_id},
            )).scalar()
    assert seats == 0
