"""Tests for the Extended adapter against a mocked x10 trading client."""
from __future__ import annotations

import sys
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

# ---------------------------------------------------------------------------
# SDK module stubs
# ---------------------------------------------------------------------------
_SDK_MODULES = [
    "x10",
    "x10.perpetual",
    "x10.perpetual.accounts",
    "x10.perpetual.configuration",
    "x10.perpetual.orderbook",
    "x10.perpetual.orders",
    "x10.perpetual.trading_client",
]
for mod_name in _SDK_MODULES:
    if mod_name not in sys.modules:
        sys.modules[mod_name] = MagicMock()

_orders_mod = sys.modules["x10.perpetual.orders"]
_orders_mod.OrderSide = SimpleNamespace(BUY="BUY", SELL="SELL")

from perp_market_maker import exchange_extended  # noqa: E402
from perp_market_maker.errors import VenueRequestError  # noqa: E402
from perp_market_maker.exchange_extended import ExtendedExchange  # noqa: E402
from perp_market_maker.types import OrderIntent, OrderSide, PositionSide  # noqa: E402


def _ok(data):
    return SimpleNamespace(status="OK", error=None, data=data)


def _make_client() -> MagicMock:
    client = MagicMock()
    client.account.get_balance = AsyncMock(
        return_value=_ok(SimpleNamespace(equity=Decimal("1000"), available_for_trade=Decimal("600")))
    )
    client.account.get_positions = AsyncMock(return_value=_ok([]))
    client.account.get_open_orders = AsyncMock(return_value=_ok([]))
    client.markets_info.get_markets_dict = AsyncMock(
        return_value={
            "BTC-USD": SimpleNamespace(
                asset_name="BTC",
                collateral_asset_name="USD",
                trading_config=SimpleNamespace(
                    min_price_change=Decimal("1"),
                    min_order_size_change=Decimal("0.00001"),
                    min_order_size=Decimal("0.0001"),
                ),
            ),
        }
    )
    client.place_order = AsyncMock(return_value=_ok(SimpleNamespace(id=991)))
    client.orders.cancel_order = AsyncMock(return_value=_ok(None))
    client.orders.mass_cancel = AsyncMock(return_value=_ok(None))
    client.close = AsyncMock()
    return client


def _make_exchange(client=None) -> ExtendedExchange:
    return ExtendedExchange(MagicMock(), trading_client=client or _make_client())


class TestSession:
    @pytest.mark.asyncio
    async def test_connect_verifies_account(self):
        client = _make_client()
        exchange = _make_exchange(client)

        await exchange.connect()

        assert exchange.connected
        client.account.get_balance.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_error_response_raises(self):
        client = _make_client()
        client.account.get_balance = AsyncMock(
            return_value=SimpleNamespace(status="ERROR", error="unauthorized", data=None)
        )
        exchange = _make_exchange(client)

        with pytest.raises(VenueRequestError, match="get_balance"):
            await exchange.connect()
        assert not exchange.connected

    @pytest.mark.asyncio
    async def test_disconnect_closes_client_and_books(self, monkeypatch):
        client = _make_client()
        book = MagicMock()
        book.close = AsyncMock()
        monkeypatch.setattr(
            exchange_extended.OrderBook, "create", AsyncMock(return_value=book), raising=False
        )
        exchange = _make_exchange(client)
        await exchange.connect()
        await exchange.subscribe_orderbook("BTC-USD", lambda b: None)

        await exchange.disconnect()

        book.close.assert_awaited_once()
        client.close.assert_awaited_once()
        assert not exchange.connected


class TestMarketData:
    @pytest.mark.asyncio
    async def test_get_markets(self):
        markets = await _make_exchange().get_markets()

        assert len(markets) == 1
        market = markets[0]
        assert (market.symbol, market.base, market.quote) == ("BTC-USD", "BTC", "USD")
        assert market.tick_size == Decimal("1")
        assert market.lot_size == Decimal("0.00001")
        assert market.min_order_size == Decimal("0.0001")

    @pytest.mark.asyncio
    async def test_orderbook_callbacks_emit_top_of_book(self, monkeypatch):
        create = AsyncMock(return_value=MagicMock())
        monkeypatch.setattr(exchange_extended.OrderBook, "create", create, raising=False)
        exchange = _make_exchange()
        books = []

        await exchange.subscribe_orderbook("BTC-USD", books.append)
        await exchange.subscribe_orderbook("BTC-USD", books.append)
        assert create.await_count == 1

        kwargs = create.await_args.kwargs
        await kwargs["best_bid_change_callback"](SimpleNamespace(price=Decimal("49990"), amount=Decimal("1")))
        await kwargs["best_ask_change_callback"](SimpleNamespace(price=Decimal("50010"), amount=Decimal("2")))

        # Two callbacks registered, two updates each.
        assert len(books) == 4
        assert books[-1].mid == Decimal("50000")
        assert books[-1].best_ask.size == Decimal("2")

    @pytest.mark.asyncio
    async def test_failed_subscription_can_be_retried(self, monkeypatch):
        create = AsyncMock(side_effect=[RuntimeError("ws"), MagicMock()])
        monkeypatch.setattr(exchange_extended.OrderBook, "create", create, raising=False)
        exchange = _make_exchange()

        with pytest.raises(RuntimeError):
            await exchange.subscribe_orderbook("BTC-USD", lambda b: None)
        await exchange.subscribe_orderbook("BTC-USD", lambda b: None)

        assert create.await_count == 2


class TestAccount:
    @pytest.mark.asyncio
    async def test_get_account(self):
        account = await _make_exchange().get_account()
        assert account.equity == Decimal("1000")
        assert account.available_margin == Decimal("600")

    @pytest.mark.asyncio
    async def test_get_positions(self):
        client = _make_client()
        client.account.get_positions = AsyncMock(
            return_value=_ok(
                [
                    SimpleNamespace(
                        market="BTC-USD",
                        side="SHORT",
                        size=Decimal("0.01"),
                        open_price=Decimal("50000"),
                        unrealised_pnl=Decimal("-2"),
                        mark_price=Decimal("50200"),
                    ),
                    SimpleNamespace(market="ETH-USD", side="LONG", size=Decimal("0"), open_price=Decimal("1")),
                ]
            )
        )

        positions = await _make_exchange(client).get_positions()

        assert len(positions) == 1
        pos = positions[0]
        assert pos.side == PositionSide.SHORT
        assert pos.size == Decimal("0.01")
        assert pos.unrealized_pnl == Decimal("-2")
        assert pos.mark_price == Decimal("50200")

    @pytest.mark.asyncio
    async def test_get_open_orders(self):
        client = _make_client()
        client.account.get_open_orders = AsyncMock(
            return_value=_ok(
                [
                    SimpleNamespace(
                        id=5, market="BTC-USD", side="SELL", price=Decimal("50025"),
                        qty=Decimal("0.002"), reduce_only=True,
                    ),
                ]
            )
        )

        orders = await _make_exchange(client).get_open_orders("BTC-USD")

        client.account.get_open_orders.assert_awaited_once_with(market_names=["BTC-USD"])
        assert orders[0].order_id == "5"
        assert orders[0].side == OrderSide.SELL
        assert orders[0].reduce_only is True


class TestOrders:
    @pytest.mark.asyncio
    async def test_place_post_only_order(self):
        client = _make_client()
        intent = OrderIntent(
            symbol="BTC-USD",
            side=OrderSide.BUY,
            price=Decimal("49975"),
            size=Decimal("0.002"),
        )

        result = await _make_exchange(client).place_order(intent)

        assert result.order_id == "991"
        kwargs = client.place_order.await_args.kwargs
        assert kwargs["market_name"] == "BTC-USD"
        assert kwargs["side"] == exchange_extended.X10OrderSide.BUY
        assert kwargs["amount_of_synthetic"] == Decimal("0.002")
        assert kwargs["price"] == Decimal("49975")
        assert kwargs["post_only"] is True
        assert kwargs["reduce_only"] is False
        assert kwargs["external_id"]

    @pytest.mark.asyncio
    async def test_rejected_order_raises(self):
        client = _make_client()
        client.place_order = AsyncMock(
            return_value=SimpleNamespace(status="ERROR", error="post-only would cross", data=None)
        )
        intent = OrderIntent(
            symbol="BTC-USD", side=OrderSide.SELL, price=Decimal("50025"), size=Decimal("0.002")
        )

        with pytest.raises(VenueRequestError):
            await _make_exchange(client).place_order(intent)

    @pytest.mark.asyncio
    async def test_cancel_order(self):
        client = _make_client()
        await _make_exchange(client).cancel_order("42")
        client.orders.cancel_order.assert_awaited_once_with(order_id=42)

    @pytest.mark.asyncio
    async def test_cancel_all_for_symbol(self):
        client = _make_client()
        await _make_exchange(client).cancel_all_orders("BTC-USD")
        client.orders.mass_cancel.assert_awaited_once_with(markets=["BTC-USD"])

    @pytest.mark.asyncio
    async def test_cancel_all_with_nothing_open(self):
        client = _make_client()
        await _make_exchange(client).cancel_all_orders()
        client.orders.mass_cancel.assert_not_awaited()
