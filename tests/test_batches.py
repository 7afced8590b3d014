import pytest

from fieldops.exceptions import (
    AlreadyAssignedError, DuplicateKeyError, InsufficientHoldingError, InsufficientStockError,
    InvalidQuantityError, MissingReasonError, NotAssignedError, NotEmptyError, NotFoundError, NotHeldByCrewError,
)
from fieldops.models import BATCH_ACTIVE, BATCH_EXHAUSTED, InventoryItem, MOVEMENT_ADJUSTMENT
from fieldops.schemas import BatchCreate
from fieldops.services import batches, catalog
from fieldops.services.history import crew_ledger_balance, list_movements
from fieldops.services.holdings import CrewHoldingsService, current_holding, loose_holding


def _warehouse(db, item_id):
    return db.get(InventoryItem, item_id, populate_existing=True).current_stock


@pytest.fixture
def cable(make_item):
    return make_item(code="FIBER-DROP", unit="meters")


@pytest.fixture
def reel(db, cable):
    return batches.create_batch(db, BatchCreate(batch_code="reel-01", item_id=cable.id, initial_quantity=100))


def test_create_batch_registers_stock_in_the_warehouse(db, cable, reel):
    assert reel.batch_code == "REEL-01"
    assert reel.remaining_quantity == 100
    assert reel.status == BATCH_ACTIVE
    assert reel.crew_id is None
    assert _warehouse(db, cable.id) == 100
    assert [m.quantity_change for m in list_movements(db, item_id=cable.id)] == [100]


def test_batch_codes_are_unique_regardless_of_case(db, cable, reel):
    with pytest.raises(DuplicateKeyError):
        batches.create_batch(db, BatchCreate(batch_code="REEL-01", item_id=cable.id, initial_quantity=5))


def test_create_batch_for_unknown_item(db):
    with pytest.raises(NotFoundError):
        batches.create_batch(db, BatchCreate(batch_code="R-9", item_id=404, initial_quantity=5))


def test_remaining_quantity_follows_meters_and_consumption(db, cable, reel):
    added = consumed = 0

    for op, amount in [("consume", 30), ("consume", 70), ("meters", 50), ("consume", 20)]:
        if op == "consume":
            batch = batches.consume_batch(db, "reel-01", amount)
            consumed += amount
        else:
            batch = batches.assign_meters_to_batch(db, "reel-01", amount)
            added += amount

        expected = 100 + added - consumed
        assert batch.remaining_quantity == expected
        assert (batch.status == BATCH_EXHAUSTED) == (expected == 0)

    assert _warehouse(db, cable.id) == 100 + added - consumed


def test_consuming_the_last_meter_exhausts_the_batch(db, reel):
    batch = batches.consume_batch(db, reel.batch_code, 100)

    assert batch.remaining_quantity == 0
    assert batch.status == BATCH_EXHAUSTED


def test_exhausted_batch_is_reactivated_by_new_meters(db, reel):
    batches.consume_batch(db, reel.batch_code, 100)

    batch = batches.assign_meters_to_batch(db, reel.batch_code, 25)

    assert batch.status == BATCH_ACTIVE
    assert batch.remaining_quantity == 25


def test_consume_beyond_remaining_fails_without_side_effects(db, cable, reel):
    with pytest.raises(InsufficientStockError):
        batches.consume_batch(db, reel.batch_code, 101)

    assert batches.get_batch(db, reel.batch_code).remaining_quantity == 100
    assert _warehouse(db, cable.id) == 100


def test_consume_requires_positive_quantity(db, reel):
    with pytest.raises(InvalidQuantityError):
        batches.consume_batch(db, reel.batch_code, 0)


def test_delete_requires_an_exhausted_batch(db, cable, reel):
    with pytest.raises(NotEmptyError):
        batches.delete_batch(db, reel.batch_code)

    batches.consume_batch(db, reel.batch_code, 100)
    batches.delete_batch(db, reel.batch_code)

    with pytest.raises(NotFoundError):
        batches.get_batch(db, "REEL-01")
    adjustments = list_movements(db, item_id=cable.id, movement_type=MOVEMENT_ADJUSTMENT)
    assert len(adjustments) == 1
    assert adjustments[0].batch_code == "REEL-01"


def test_batch_follows_its_crew(db, cable, reel, make_crew):
    crew = make_crew()
    other = make_crew()

    batch = batches.assign_batch_to_crew(db, reel.batch_code, crew.id)
    assert batch.crew_id == crew.id
    assert current_holding(db, crew.id, cable.id) == 100
    assert _warehouse(db, cable.id) == 0

    with pytest.raises(AlreadyAssignedError):
        batches.assign_batch_to_crew(db, reel.batch_code, other.id)

    with pytest.raises(NotHeldByCrewError):
        batches.consume_batch(db, reel.batch_code, 10, crew_id=other.id)

    batches.consume_batch(db, reel.batch_code, 40, crew_id=crew.id)
    batches.assign_meters_to_batch(db, reel.batch_code, 15)
    assert current_holding(db, crew.id, cable.id) == 75
    assert crew_ledger_balance(db, crew.id, cable.id) == 75

    with pytest.raises(MissingReasonError):
        batches.return_batch_to_warehouse(db, reel.batch_code, "")

    batch = batches.return_batch_to_warehouse(db, reel.batch_code, "End of project")
    assert batch.crew_id is None
    assert current_holding(db, crew.id, cable.id) == 0
    assert crew_ledger_balance(db, crew.id, cable.id) == 0
    assert _warehouse(db, cable.id) == 75

    with pytest.raises(NotAssignedError):
        batches.return_batch_to_warehouse(db, reel.batch_code, "Again")


def test_plain_crew_moves_leave_a_held_reel_alone(db, cable, reel, make_crew):
    crew = make_crew()
    batches.assign_batch_to_crew(db, reel.batch_code, crew.id)
    catalog.restock_item(db, cable.id, 20)
    holdings = CrewHoldingsService(db)
    holdings.grant_to_crew(crew.id, cable.id, 20)
    assert current_holding(db, crew.id, cable.id) == 120
    assert loose_holding(db, crew.id, cable.id) == 20

    with pytest.raises(InsufficientHoldingError):
        holdings.return_from_crew(crew.id, cable.id, 100, "Back to stock")
    with pytest.raises(InsufficientHoldingError):
        holdings.consume_from_crew(crew.id, cable.id, 21)
    assert current_holding(db, crew.id, cable.id) == 120

    holdings.return_from_crew(crew.id, cable.id, 20, "Back to stock")
    assert current_holding(db, crew.id, cable.id) == 100
    assert _warehouse(db, cable.id) == 20

    batches.consume_batch(db, reel.batch_code, 10, crew_id=crew.id)
    batch = batches.return_batch_to_warehouse(db, reel.batch_code, "End of project")
    assert batch.crew_id is None
    assert current_holding(db, crew.id, cable.id) == 0
    assert _warehouse(db, cable.id) == 110


def test_exhausted_reel_no_longer_reserves_crew_meters(db, cable, reel, make_crew):
    crew = make_crew()
    batches.assign_batch_to_crew(db, reel.batch_code, crew.id)
    batches.consume_batch(db, reel.batch_code, 100, crew_id=crew.id)
    catalog.restock_item(db, cable.id, 5)
    CrewHoldingsService(db).grant_to_crew(crew.id, cable.id, 5)

    assert loose_holding(db, crew.id, cable.id) == 5
    CrewHoldingsService(db).consume_from_crew(crew.id, cable.id, 5)
    assert current_holding(db, crew.id, cable.id) == 0
