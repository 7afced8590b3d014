"""
Concurrent consumption against a single crew holding.

Each worker uses its own session and connection; the conditional UPDATE in
debit_holding is the only thing standing between them and a negative
holding.
"""
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

from fieldops.exceptions import InsufficientHoldingError
from fieldops.services.history import crew_ledger_balance
from fieldops.services.holdings import CrewHoldingsService, current_holding


def _race(session_factory, crew_id, item_id, workers, quantity):
    barrier = Barrier(workers)

    def consume(_):
        session = session_factory()
        try:
            barrier.wait()
            CrewHoldingsService(session).consume_from_crew(crew_id, item_id, quantity)
            return "ok"
        except InsufficientHoldingError:
            return "insufficient"
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(consume, range(workers)))


def test_two_consumes_of_the_last_unit_yield_one_success(db, session_factory, make_item, make_crew):
    item = make_item(stock=1)
    crew = make_crew()
    CrewHoldingsService(db).grant_to_crew(crew.id, item.id, 1)
    crew_id, item_id = crew.id, item.id

    results = _race(session_factory, crew_id, item_id, workers=2, quantity=1)

    assert sorted(results) == ["insufficient", "ok"]
    assert current_holding(db, crew_id, item_id) == 0
    assert crew_ledger_balance(db, crew_id, item_id) == 0


def test_many_consumers_never_overdraw(db, session_factory, make_item, make_crew):
    item = make_item(stock=5)
    crew = make_crew()
    CrewHoldingsService(db).grant_to_crew(crew.id, item.id, 5)
    crew_id, item_id = crew.id, item.id

    results = _race(session_factory, crew_id, item_id, workers=8, quantity=1)

    assert results.count("ok") == 5
    assert results.count("insufficient") == 3
    assert current_holding(db, crew_id, item_id) == 0
    assert crew_ledger_balance(db, crew_id, item_id) == 0
