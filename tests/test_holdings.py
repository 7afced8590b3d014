import pytest

from fieldops.exceptions import (
    ImmutableRecordError, InsufficientHoldingError, InsufficientStockError, InvalidOperationError,
    InvalidQuantityError, MissingReasonError, NotFoundError,
)
from fieldops.models import (
    InventoryItem, InventoryMovement, INSTANCE_ASSIGNED, MOVEMENT_ASSIGNMENT, MOVEMENT_RETURN,
)
from fieldops.schemas import Actor, InstanceCreate
from fieldops.services import instances
from fieldops.services.history import crew_ledger_balance, list_movements
from fieldops.services.holdings import CrewHoldingsService, current_holding


def _warehouse(db, item_id):
    return db.get(InventoryItem, item_id, populate_existing=True).current_stock


def test_grant_moves_stock_from_warehouse_to_crew(db, make_item, make_crew):
    item = make_item(stock=10)
    crew = make_crew()

    held = CrewHoldingsService(db).grant_to_crew(crew.id, item.id, 4, reason="Weekly allocation")

    assert held == 4
    assert _warehouse(db, item.id) == 6
    movements = list_movements(db, crew_id=crew.id)
    assert len(movements) == 1
    assert movements[0].movement_type == MOVEMENT_ASSIGNMENT
    assert movements[0].quantity_change == 4
    assert movements[0].reason == "Weekly allocation"


@pytest.mark.parametrize("quantity", [0, -3])
def test_grant_rejects_non_positive_quantity(db, make_item, make_crew, quantity):
    item = make_item(stock=10)
    crew = make_crew()

    with pytest.raises(InvalidQuantityError):
        CrewHoldingsService(db).grant_to_crew(crew.id, item.id, quantity)

    assert current_holding(db, crew.id, item.id) == 0
    assert _warehouse(db, item.id) == 10


def test_grant_beyond_warehouse_stock_leaves_everything_unchanged(db, make_item, make_crew):
    item = make_item(stock=3)
    crew = make_crew()

    with pytest.raises(InsufficientStockError) as exc_info:
        CrewHoldingsService(db).grant_to_crew(crew.id, item.id, 5)

    assert exc_info.value.available == 3
    assert exc_info.value.requested == 5
    assert _warehouse(db, item.id) == 3
    assert current_holding(db, crew.id, item.id) == 0
    assert list_movements(db, crew_id=crew.id) == []


def test_grant_of_serialized_equipment_is_rejected(db, make_item, make_crew):
    router = make_item(item_type="equipment")
    crew = make_crew()

    with pytest.raises(InvalidOperationError):
        CrewHoldingsService(db).grant_to_crew(crew.id, router.id, 1)


def test_plain_consume_and_return_refuse_equipment(db, make_item, make_crew):
    router = make_item(item_type="equipment")
    crew = make_crew()
    instances.add_instances(db, router.id, [InstanceCreate(unique_id="SN-9")])
    instances.assign_instances_to_crew(db, ["SN-9"], crew.id)
    service = CrewHoldingsService(db)

    with pytest.raises(InvalidOperationError):
        service.return_from_crew(crew.id, router.id, 1, reason="Spare")
    with pytest.raises(InvalidOperationError):
        service.consume_from_crew(crew.id, router.id, 1)

    assert current_holding(db, crew.id, router.id) == 1
    assert instances.load_instances(db, ["SN-9"])[0].status == INSTANCE_ASSIGNED


def test_grant_to_unknown_crew(db, make_item):
    item = make_item(stock=5)

    with pytest.raises(NotFoundError):
        CrewHoldingsService(db).grant_to_crew(999, item.id, 1)


def test_consume_more_than_held_fails_without_side_effects(db, make_item, make_crew):
    item = make_item(stock=10)
    crew = make_crew()
    service = CrewHoldingsService(db)
    service.grant_to_crew(crew.id, item.id, 2)

    with pytest.raises(InsufficientHoldingError) as exc_info:
        service.consume_from_crew(crew.id, item.id, 3)

    assert exc_info.value.available == 2
    assert current_holding(db, crew.id, item.id) == 2
    assert crew_ledger_balance(db, crew.id, item.id) == 2


def test_return_requires_a_reason(db, make_item, make_crew):
    item = make_item(stock=10)
    crew = make_crew()
    service = CrewHoldingsService(db)
    service.grant_to_crew(crew.id, item.id, 2)

    with pytest.raises(MissingReasonError):
        service.return_from_crew(crew.id, item.id, 1, reason="  ")

    assert current_holding(db, crew.id, item.id) == 2


def test_return_credits_the_warehouse(db, make_item, make_crew):
    item = make_item(stock=10)
    crew = make_crew()
    service = CrewHoldingsService(db)
    service.grant_to_crew(crew.id, item.id, 6)

    held = service.return_from_crew(crew.id, item.id, 4, reason="Job cancelled")

    assert held == 2
    assert _warehouse(db, item.id) == 8
    returned = list_movements(db, crew_id=crew.id, movement_type=MOVEMENT_RETURN)
    assert [m.quantity_change for m in returned] == [-4]


def test_holding_always_equals_signed_movement_sum(db, make_item, make_crew):
    item = make_item(stock=50)
    crew = make_crew()
    service = CrewHoldingsService(db)

    steps = [
        ("grant", 5), ("consume", 2), ("return", 1), ("consume", 9),
        ("grant", 3), ("consume", 5), ("return", 1), ("grant", 7),
    ]
    for op, quantity in steps:
        try:
            if op == "grant":
                service.grant_to_crew(crew.id, item.id, quantity)
            elif op == "consume":
                service.consume_from_crew(crew.id, item.id, quantity)
            else:
                service.return_from_crew(crew.id, item.id, quantity, reason="Surplus")
        except InsufficientHoldingError:
            pass

        held = current_holding(db, crew.id, item.id)
        assert held >= 0
        assert held == crew_ledger_balance(db, crew.id, item.id)

    # 5 - 2 - 1 + 3 - 5 + 7; consume 9 and the return from an empty holding are rejected
    assert current_holding(db, crew.id, item.id) == 7
    assert _warehouse(db, item.id) == 50 - 5 + 1 - 3 - 7


def test_crew_inventory_lists_non_zero_holdings(db, make_item, make_crew):
    cable = make_item(stock=10)
    connectors = make_item(stock=10)
    crew = make_crew()
    service = CrewHoldingsService(db)
    service.grant_to_crew(crew.id, cable.id, 3)
    service.grant_to_crew(crew.id, connectors.id, 1)
    service.consume_from_crew(crew.id, connectors.id, 1)

    inventory = service.crew_inventory(crew.id)

    assert [(h.item_id, h.quantity) for h in inventory] == [(cable.id, 3)]


def test_grant_notifies_the_crew_after_commit(db, make_item, make_crew, notifier):
    item = make_item(stock=10, unit="meters")
    crew = make_crew()
    actor = Actor(id=7, role="installer")

    CrewHoldingsService(db, notifier=notifier, actor=actor).grant_to_crew(crew.id, item.id, 4)

    assert len(notifier.events) == 1
    event = notifier.events[0]
    assert event.crew_id == crew.id
    assert event.payload["quantity"] == 4
    assert event.exclude_actor_id == 7


def test_notifier_failure_does_not_fail_the_grant(db, make_item, make_crew, exploding_notifier):
    item = make_item(stock=10)
    crew = make_crew()

    held = CrewHoldingsService(db, notifier=exploding_notifier).grant_to_crew(crew.id, item.id, 4)

    assert held == 4
    assert current_holding(db, crew.id, item.id) == 4


def test_movements_are_append_only(db, make_item, make_crew):
    item = make_item(stock=10)
    crew = make_crew()
    CrewHoldingsService(db).grant_to_crew(crew.id, item.id, 4)

    movement = db.query(InventoryMovement).filter(InventoryMovement.crew_id == crew.id).one()
    movement.quantity_change = 40
    with pytest.raises(ImmutableRecordError):
        db.commit()
    db.rollback()

    movement = db.query(InventoryMovement).filter(InventoryMovement.crew_id == crew.id).one()
    db.delete(movement)
    with pytest.raises(ImmutableRecordError):
        db.commit()
    db.rollback()

    assert crew_ledger_balance(db, crew.id, item.id) == 4
