import pytest

from paper_engine.config_types import ProposedOrder, Side
from paper_engine.errors import ExecutionError, OrderRejected
from paper_engine.paper_sim import (
    NO_PARAMS,
    NO_PRICE,
    NO_SIDE,
    NO_SYMBOL,
    NON_POSITIVE_SIZE,
    ExecutionGuard,
    Fill,
    build_order_request,
)
from tests.helpers import NOW


def _proposed(**kwargs) -> ProposedOrder:
    values = dict(
        symbol="eur/usd",
        side=Side.LONG,
        size=2.0,
        entry_price=100.01,
        stop=99.5,
        target=101.0,
        strategy="burst",
        reason="burst long trending/normal",
        confidence=0.8,
        quality=82.0,
        batch_id="burst_1",
    )
    values.update(kwargs)
    return ProposedOrder(**values)


def test_proposed_order_becomes_request() -> None:
    request = build_order_request(_proposed())
    assert request.symbol == "EUR/USD"
    assert request.side == Side.LONG
    assert request.price == 100.01
    assert (request.stop, request.target) == (99.5, 101.0)
    assert request.batch_id == "burst_1"


def test_mapping_request_defaults_strategy() -> None:
    request = build_order_request({"symbol": "GBP/USD", "side": "short", "size": "1.5", "entry_price": 1.27})
    assert request.side == Side.SHORT
    assert request.size == 1.5
    assert request.price == 1.27
    assert request.strategy == "manual"


@pytest.mark.parametrize(
    "order,code",
    [
        (None, NO_PARAMS),
        ({"side": "long", "size": 1, "price": 1.0}, NO_SYMBOL),
        ({"symbol": "EUR/USD", "side": "up", "size": 1, "price": 1.0}, NO_SIDE),
        ({"symbol": "EUR/USD", "side": "long", "size": 0, "price": 1.0}, NON_POSITIVE_SIZE),
        ({"symbol": "EUR/USD", "side": "long", "size": "nan", "price": 1.0}, NON_POSITIVE_SIZE),
        ({"symbol": "EUR/USD", "side": "long", "size": 1}, NO_PRICE),
    ],
)
def test_rejections_carry_reason_codes(order, code) -> None:
    with pytest.raises(OrderRejected) as excinfo:
        build_order_request(order)
    assert excinfo.value.code == code


def test_paper_fill_is_immediate_at_request_price() -> None:
    fill = ExecutionGuard().execute(build_order_request(_proposed()), NOW)
    assert fill == Fill(symbol="EUR/USD", side=Side.LONG, size=2.0, price=100.01, filled_at=NOW)


def test_live_without_broker_raises() -> None:
    with pytest.raises(ExecutionError):
        ExecutionGuard(live=True).execute(build_order_request(_proposed()), NOW)


def test_live_forwards_to_broker() -> None:
    seen = []

    class Broker:
        def submit(self, request, now):
            seen.append(request.symbol)
            return Fill(request.symbol, request.side, request.size, 100.02, now, venue="broker")

    fill = ExecutionGuard(live=True, broker=Broker()).execute(build_order_request(_proposed()), NOW)
    assert seen == ["EUR/USD"]
    assert fill.venue == "broker"
    assert fill.price == 100.02
