"""
Tests for MarketEventListener: lifecycle, polling, trigger detection.
"""

from unittest.mock import AsyncMock

import pytest

from conftest import COIN_TYPE, PACKAGE_ID, POOL_ID, VAULT_ID, filled, placed
from floorguard.exchange.types import EventPage
from floorguard.execution.market_listener import (
    ORDER_FILLED,
    ORDER_PLACED,
    ListenerConfig,
    MarketEventListener,
)
from floorguard.market_data.order_cache import OrderCache
from floorguard.state.pool_registry import PoolRegistry

FLOOR = 1_000_000


def _quiet(*args, **kwargs):
    pass


@pytest.fixture
def registry():
    reg = PoolRegistry(log_event=_quiet)
    reg.register_pool(POOL_ID, vault_id=VAULT_ID, floor_price=FLOOR, balance_manager_id="0xbm")
    return reg


@pytest.fixture
def order_cache():
    return OrderCache(log_event=_quiet)


@pytest.fixture
def handler():
    return AsyncMock()


@pytest.fixture
def listener(mock_client, registry, order_cache, handler, events_log):
    return MarketEventListener(
        client=mock_client,
        registry=registry,
        order_cache=order_cache,
        trigger_handler=handler,
        config=ListenerConfig(
            poll_interval_sec=60.0,
            deepbook_package_id=PACKAGE_ID,
            log_event_callback=events_log,
        ),
    )


def _page(*events, cursor=None):
    return EventPage(data=list(events), next_cursor=cursor or {"txDigest": "c", "eventSeq": "0"})


async def _poll_and_drain(listener):
    result = await listener.poll()
    await listener.drain_triggers()
    return result


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, listener, mock_client):
        """A second start is a no-op and creates no second loop."""
        assert await listener.start() is True
        task = listener._task
        queries = len(mock_client.queries)

        assert await listener.start() is False
        assert listener._task is task
        assert len(mock_client.queries) == queries

        await listener.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, listener):
        """Stopping twice, or before starting, is harmless."""
        assert await listener.stop() is False

        await listener.start()
        assert await listener.stop() is True
        assert await listener.stop() is False
        assert listener.is_running is False

    @pytest.mark.asyncio
    async def test_start_runs_initial_poll(self, listener, mock_client):
        """Starting polls both event types immediately."""
        await listener.start()

        names = [q[0].split("::")[-1] for q in mock_client.queries]
        assert names == [ORDER_PLACED, ORDER_FILLED]
        assert mock_client.queries[0][0] == f"{PACKAGE_ID}::order_info::OrderPlaced"

        await listener.stop()


class TestPolling:
    @pytest.mark.asyncio
    async def test_no_pools_skips_queries(self, mock_client, order_cache, events_log):
        """With nothing to watch no queries are issued."""
        listener = MarketEventListener(
            mock_client, PoolRegistry(log_event=_quiet), order_cache,
            config=ListenerConfig(log_event_callback=events_log),
        )

        result = await listener.poll()

        assert result.success is True
        assert mock_client.queries == []
        assert events_log.records[-1][0] == "poll_no_pools"

    @pytest.mark.asyncio
    async def test_cursor_advances_only_with_data(self, listener, mock_client):
        """Cursors move forward when a page has events and stay otherwise."""
        cursor = {"txDigest": "abc", "eventSeq": "3"}
        mock_client.pages[ORDER_PLACED] = [_page(placed(price_raw=1_100_000_000), cursor=cursor)]

        await listener.poll()
        await listener.poll()

        placed_cursors = [q[1] for q in mock_client.queries if q[0].endswith(ORDER_PLACED)]
        filled_cursors = [q[1] for q in mock_client.queries if q[0].endswith(ORDER_FILLED)]
        assert placed_cursors == [None, cursor]
        assert filled_cursors == [None, None]

    @pytest.mark.asyncio
    async def test_unmonitored_pools_are_ignored(self, listener, mock_client, order_cache, handler):
        """Events for other pools are dropped before processing."""
        mock_client.pages[ORDER_PLACED] = [_page(placed(pool_id="0xother"))]

        result = await _poll_and_drain(listener)

        assert result.events_found == 0
        assert order_cache.size() == 0
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_events_processed_once(self, listener, mock_client, order_cache):
        """The same event id seen in two polls is processed once."""
        event = placed(price_raw=1_100_000_000)
        mock_client.pages[ORDER_PLACED] = [_page(event), _page(event)]

        first = await listener.poll()
        second = await listener.poll()

        assert first.new_events == 1
        assert second.new_events == 0
        assert listener.get_status()["stats"]["events_processed"] == 1

    @pytest.mark.asyncio
    async def test_events_processed_in_timestamp_order(self, listener, mock_client, registry):
        """Fills across both pages apply in timestamp order."""
        mock_client.pages[ORDER_PLACED] = [_page(
            placed(price_raw=1_100_000_000, ts=3000, digest="p1"),
        )]
        mock_client.pages[ORDER_FILLED] = [_page(
            filled(price_raw=1_300_000_000, taker_is_bid=True, ts=2000, digest="f2"),
            filled(price_raw=1_200_000_000, taker_is_bid=True, ts=1000, digest="f1"),
        )]
        seen = []
        original = listener.process_event

        async def recording(event):
            seen.append(event["id"]["txDigest"])
            await original(event)

        listener.process_event = recording
        await listener.poll()

        assert seen == ["f1", "f2", "p1"]
        assert registry.get_vault_by_pool_id(POOL_ID).last_trade_price == 1_300_000

    @pytest.mark.asyncio
    async def test_query_error_does_not_stop_other_type(self, listener, mock_client, registry):
        """A failed OrderPlaced query still lets fills through."""
        mock_client.query_errors[ORDER_PLACED] = ConnectionError("timeout")
        mock_client.pages[ORDER_FILLED] = [_page(filled(price_raw=1_200_000_000, taker_is_bid=True))]

        result = await listener.poll()

        assert result.success is False
        assert "OrderPlaced: timeout" in result.errors[0]
        assert registry.get_vault_by_pool_id(POOL_ID).last_trade_price == 1_200_000
        assert listener.get_status()["stats"]["poll_errors"] == 1

    @pytest.mark.asyncio
    async def test_processing_error_is_contained(self, listener, mock_client, events_log):
        """An exception while processing one event is logged, not raised."""
        mock_client.pages[ORDER_PLACED] = [_page(placed())]
        listener.process_event = AsyncMock(side_effect=RuntimeError("bad event"))

        result = await listener.poll()

        assert result.success is False
        assert "event_process_error" in [r[0] for r in events_log.records]

    @pytest.mark.asyncio
    async def test_handler_error_is_contained(self, listener, mock_client, handler, events_log):
        """A failing trigger handler does not break the listener."""
        handler.side_effect = RuntimeError("executor exploded")
        mock_client.pages[ORDER_PLACED] = [_page(placed())]

        await _poll_and_drain(listener)

        assert "trigger_handler_error" in [r[0] for r in events_log.records]


class TestOrderPlaced:
    @pytest.mark.asyncio
    async def test_sell_below_floor_triggers(self, listener, mock_client, handler, order_cache):
        """A resting sell under the floor raises a trigger with its size."""
        mock_client.pages[ORDER_PLACED] = [_page(placed(price_raw=900_000_000, quantity=2_000_000_000))]

        result = await _poll_and_drain(listener)

        assert result.triggers == 1
        trigger = handler.await_args.args[0]
        assert trigger.pool_id == POOL_ID
        assert trigger.vault_id == VAULT_ID
        assert trigger.current_price == 900_000
        assert trigger.floor_price == FLOOR
        assert trigger.order_quantity == 2_000_000_000
        assert trigger.order_id == "101"
        assert trigger.source == ORDER_PLACED
        assert order_cache.get_cached_order("101").is_bid is False

    @pytest.mark.asyncio
    async def test_bid_below_floor_ignored(self, listener, mock_client, handler):
        """Bids never trigger."""
        mock_client.pages[ORDER_PLACED] = [_page(placed(is_bid=True))]

        await _poll_and_drain(listener)

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sell_at_floor_ignored(self, listener, mock_client, handler):
        """A sell exactly at the floor is not a breach."""
        mock_client.pages[ORDER_PLACED] = [_page(placed(price_raw=1_000_000_000))]

        await _poll_and_drain(listener)

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_leading_zero_pool_ids_match(self, listener, mock_client, handler):
        """Event pool ids are matched after zero normalisation."""
        mock_client.pages[ORDER_PLACED] = [_page(placed(pool_id="0xa1"))]

        await _poll_and_drain(listener)

        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_manual_pool_is_observed_only(self, listener, mock_client, handler, order_cache):
        """Manual pools feed the cache but never trigger."""
        await listener.add_manual_pool("0xbeef")
        mock_client.pages[ORDER_PLACED] = [_page(placed(pool_id="0xbeef", order_id="9"))]

        await _poll_and_drain(listener)

        assert order_cache.get_cached_order("9") is not None
        handler.assert_not_awaited()


class TestOrderFilled:
    @pytest.mark.asyncio
    async def test_taker_sell_below_floor_triggers(self, listener, mock_client, handler, registry):
        """A market sell through the floor triggers with the filled size."""
        mock_client.pages[ORDER_FILLED] = [_page(filled(price_raw=950_000_000, base_quantity=4_000_000_000))]

        await _poll_and_drain(listener)

        assert registry.get_vault_by_pool_id(POOL_ID).last_trade_price == 950_000
        trigger = handler.await_args.args[0]
        assert trigger.current_price == 950_000
        assert trigger.order_quantity == 4_000_000_000
        assert trigger.order_id == "202"
        assert trigger.source == ORDER_FILLED

    @pytest.mark.asyncio
    async def test_taker_buy_does_not_trigger(self, listener, mock_client, handler, registry):
        """A buy at a low price updates the price but does not trigger."""
        mock_client.pages[ORDER_FILLED] = [_page(filled(taker_is_bid=True))]

        await _poll_and_drain(listener)

        assert registry.get_vault_by_pool_id(POOL_ID).last_trade_price == 900_000
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_maker_side_flag_used_when_taker_flag_absent(self, listener, mock_client, handler):
        """maker_is_bid=True means the taker sold."""
        mock_client.pages[ORDER_FILLED] = [_page(filled(taker_is_bid=None, extra={"maker_is_bid": True}))]

        await _poll_and_drain(listener)

        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cached_maker_order_decides_side(self, listener, mock_client, handler, order_cache):
        """Without side flags the cached maker order decides."""
        order_cache.record_order({"order_id": "303", "pool_id": POOL_ID, "price": 900_000, "is_bid": True})
        mock_client.pages[ORDER_FILLED] = [_page(filled(taker_is_bid=None))]

        await _poll_and_drain(listener)

        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_side_does_not_trigger(self, listener, mock_client, handler):
        """No side information means no trigger."""
        mock_client.pages[ORDER_FILLED] = [_page(filled(taker_is_bid=None))]

        await _poll_and_drain(listener)

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_quantity_falls_back_to_cached_taker_order(self, listener, mock_client, handler, order_cache):
        """Missing fill size is recovered from the cached taker order."""
        order_cache.record_order({
            "order_id": "202", "pool_id": POOL_ID, "price": 900_000, "quantity": 7_000_000_000,
        })
        mock_client.pages[ORDER_FILLED] = [_page(filled(base_quantity=None))]

        await _poll_and_drain(listener)

        assert handler.await_args.args[0].order_quantity == 7_000_000_000

    @pytest.mark.asyncio
    async def test_missing_quantity_without_cache_is_none(self, listener, mock_client, handler):
        """With no size anywhere the executor falls back to tiers."""
        mock_client.pages[ORDER_FILLED] = [_page(filled(base_quantity=None))]

        await _poll_and_drain(listener)

        assert handler.await_args.args[0].order_quantity is None

    @pytest.mark.asyncio
    async def test_order_triggers_at_most_once(self, listener, mock_client, handler):
        """A sell seen as placed and then filled triggers once."""
        mock_client.pages[ORDER_PLACED] = [_page(placed(order_id="555", ts=1000, digest="a"))]
        mock_client.pages[ORDER_FILLED] = [_page(filled(taker_order_id="555", ts=2000, digest="b"))]

        await _poll_and_drain(listener)

        handler.assert_awaited_once()
        assert listener.get_status()["stats"]["buyback_triggered"] == 1


class TestReportOrder:
    @pytest.mark.asyncio
    async def test_missing_fields(self, listener):
        """Reports need order id, pool id and price."""
        result = await listener.report_order({"order_id": "1", "pool_id": POOL_ID})

        assert result == {"success": False, "error": "Missing required fields"}

    @pytest.mark.asyncio
    async def test_reported_sell_below_floor_triggers(self, listener, handler, order_cache):
        """A reported sell is cached and checked like an OrderPlaced event."""
        result = await listener.report_order({
            "orderId": "77", "poolId": POOL_ID, "price": "800000000", "isBid": False, "quantity": "1000000000",
        })
        await listener.drain_triggers()

        assert result == {"success": True, "order_id": "77", "cached": True, "triggered": True}
        assert order_cache.get_cached_order("77").price == 800_000
        trigger = handler.await_args.args[0]
        assert trigger.source == "order_report"
        assert trigger.order_quantity == 1_000_000_000

    @pytest.mark.asyncio
    async def test_reported_bid_does_not_trigger(self, listener, handler):
        """Reported bids are cached only."""
        result = await listener.report_order({
            "order_id": "78", "pool_id": POOL_ID, "price": 800_000_000, "is_bid": True,
        })

        assert result["triggered"] is False
        handler.assert_not_awaited()


class TestManualPools:
    @pytest.mark.asyncio
    async def test_add_reads_chain_parameters(self, listener, mock_client):
        """Pool type and parameters are read from the chain object."""
        mock_client.pool_objects["0xbeef"] = {
            "type": f"{PACKAGE_ID}::pool::Pool<{COIN_TYPE}, 0x2::usdc::USDC>",
            "content": {"fields": {"tick_size": "1000", "lot_size": "100", "min_size": "10"}},
        }

        pool = await listener.add_manual_pool("0xbeef")

        assert pool["coin_type"] == COIN_TYPE
        assert pool["quote_coin"] == "0x2::usdc::USDC"
        assert pool["tick_size"] == "1000"
        assert pool["floor_price"] == 1_000_000
        assert pool["source"] == "manual"
        assert listener.get_manual_pools() == [pool]

    @pytest.mark.asyncio
    async def test_add_tolerates_chain_errors(self, listener, mock_client):
        """Chain lookup failures still add the pool with overrides."""
        mock_client.object_error = ConnectionError("down")

        pool = await listener.add_manual_pool("0xbeef", {"coin_type": COIN_TYPE, "floor_price": 5})

        assert pool["coin_type"] == COIN_TYPE
        assert pool["floor_price"] == 5

    @pytest.mark.asyncio
    async def test_add_requires_pool_id(self, listener):
        """An empty pool id is refused."""
        with pytest.raises(ValueError):
            await listener.add_manual_pool("")

    @pytest.mark.asyncio
    async def test_remove(self, listener):
        """Removal reports whether the pool was present."""
        await listener.add_manual_pool("0x00beef")

        assert listener.remove_manual_pool("0xbeef") is True
        assert listener.remove_manual_pool("0xbeef") is False


class TestQueries:
    @pytest.mark.asyncio
    async def test_order_book_snapshot(self, listener, mock_client):
        """Order book counts and vault balances come from the pool object."""
        mock_client.pool_objects[POOL_ID] = {
            "content": {"fields": {
                "bids": {"fields": {"size": "3"}},
                "asks": {"fields": {"size": "4"}},
                "mid_price": "1500000",
                "base_vault": {"fields": {"balance": "10"}},
                "quote_vault": {"fields": {"balance": "20"}},
            }},
        }

        book = await listener.get_pool_order_book(POOL_ID)

        assert book["bids_count"] == 3
        assert book["asks_count"] == 4
        assert book["total_orders"] == 7
        assert book["mid_price"] == 1.5
        assert book["pool_state"] == {"base_vault": 10, "quote_vault": 20}

    @pytest.mark.asyncio
    async def test_order_book_missing_pool(self, listener):
        """Unknown pools return an error payload."""
        assert await listener.get_pool_order_book("0xnothing") == {"error": "Pool not found"}

    @pytest.mark.asyncio
    async def test_order_book_query_failure(self, listener, mock_client):
        """Query failures are reported, not raised."""
        mock_client.object_error = RuntimeError("rpc down")

        assert await listener.get_pool_order_book(POOL_ID) == {"error": "rpc down"}

    def test_check_pool_price(self, listener, registry):
        """needs_buyback requires an observed trade below the floor."""
        assert listener.check_pool_price(POOL_ID)["needs_buyback"] is False

        registry.update_last_trade_price(POOL_ID, 900_000)
        status = listener.check_pool_price(POOL_ID)

        assert status["needs_buyback"] is True
        assert status["last_trade_price_display"] == "0.900000"
        assert listener.check_pool_price("0xdead") == {"error": "Pool not registered"}

    def test_get_status(self, listener):
        """Status reports configuration and counters."""
        status = listener.get_status()

        assert status["is_running"] is False
        assert status["monitored_pools"] == 1
        assert status["manual_pools"] == 0
        assert status["stats"]["events_processed"] == 0
