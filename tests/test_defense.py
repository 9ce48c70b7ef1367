"""
Tests for the PriceFloorDefense control facade, including the
listener -> executor flow end to end.
"""

import pytest
from prometheus_client import CollectorRegistry

from conftest import COIN_TYPE, PACKAGE_ID, POOL_ID, VAULT_ID, placed
from floorguard.exchange.types import EventPage
from floorguard.execution.buyback_executor import ExecutorConfig
from floorguard.execution.market_listener import ORDER_PLACED, ListenerConfig
from floorguard.monitoring.metrics import DefenseMetrics
from floorguard.monitoring.server import HealthChecker
from floorguard.orchestrator.defense import PriceFloorDefense


def _quiet(*args, **kwargs):
    pass


@pytest.fixture
def health():
    return HealthChecker()


@pytest.fixture
def metrics():
    return DefenseMetrics(CollectorRegistry())


@pytest.fixture
def defense(mock_client, credential, metrics, health):
    return PriceFloorDefense.create(
        client=mock_client,
        listener_config=ListenerConfig(
            poll_interval_sec=60.0,
            deepbook_package_id=PACKAGE_ID,
            log_event_callback=_quiet,
        ),
        executor_config=ExecutorConfig(enabled=True, log_event_callback=_quiet),
        credential=credential,
        metrics=metrics,
        health=health,
        log_event=_quiet,
    )


def _register(defense, **overrides):
    payload = {
        "pool_id": POOL_ID,
        "vault_id": VAULT_ID,
        "floor_price": 1.0,
        "balance_manager_id": "0xbm",
        "coin_type": COIN_TYPE,
    }
    payload.update(overrides)
    return defense.register_pool(payload)


class TestPoolOperations:
    def test_register_converts_human_floor(self, defense, metrics):
        """Human floor prices are stored as fixed point."""
        result = _register(defense, floor_price="1.25")

        assert result["success"] is True
        assert result["pool"]["floor_price"] == 1_250_000
        assert result["pool"]["actionable"] is True
        assert metrics.get_registry().get_sample_value("floorguard_registered_pools") == 1.0

    def test_register_defaults_floor_to_one(self, defense):
        """A missing floor defaults to 1.0."""
        result = defense.register_pool({"poolId": POOL_ID, "vaultId": VAULT_ID})

        assert result["pool"]["floor_price"] == 1_000_000

    def test_register_missing_fields(self, defense):
        """pool_id and vault_id are required."""
        result = defense.register_pool({"pool_id": POOL_ID})

        assert result["success"] is False
        assert result["status"] == 400

    def test_register_vault_conflict(self, defense):
        """Binding a vault to a second pool is a conflict."""
        _register(defense)

        result = _register(defense, pool_id="0xother")

        assert result["status"] == 409

    def test_register_bad_minimum(self, defense):
        """Non-numeric minimums are a client error."""
        result = _register(defense, min_buyback_amount="lots")

        assert result["status"] == 400

    def test_vault_lookup(self, defense):
        """Pools can be found by vault id."""
        _register(defense)

        assert defense.get_vault_pool_info(VAULT_ID)["pool"]["pool_id"] == POOL_ID
        assert defense.get_vault_pool_info("0xnope")["status"] == 404

    def test_unregister_and_list(self, defense):
        """Listing reflects registrations and removals."""
        _register(defense)
        assert defense.list_pools()["count"] == 1

        assert defense.unregister_pool(POOL_ID)["success"] is True
        assert defense.list_pools()["count"] == 0
        assert defense.unregister_pool(POOL_ID)["status"] == 404


class TestListenerOperations:
    @pytest.mark.asyncio
    async def test_start_and_stop_update_health(self, defense, health):
        """Listener lifecycle drives readiness."""
        _register(defense)

        started = await defense.start_listener()
        assert started["started"] is True
        assert health.is_ready() is True

        again = await defense.start_listener()
        assert again["started"] is False

        stopped = await defense.stop_listener()
        assert stopped["stopped"] is True
        assert health.is_ready() is False

    @pytest.mark.asyncio
    async def test_add_manual_pool_with_vault_registers(self, defense):
        """Supplying a vault makes a manual pool defendable."""
        result = await defense.add_manual_pool({
            "pool_id": "0xbeef",
            "vault_id": "0xv9",
            "floor_price": 2.0,
            "coin_type": COIN_TYPE,
        })

        assert result["registered"] is True
        assert defense.registry.get_floor_price("0xbeef") == 2_000_000
        assert defense.get_manual_pools()["count"] == 1

    @pytest.mark.asyncio
    async def test_add_manual_pool_vault_conflict(self, defense):
        """A conflicting vault is reported but the pool stays watched."""
        _register(defense)

        result = await defense.add_manual_pool({"pool_id": "0xbeef", "vault_id": VAULT_ID})

        assert result["status"] == 409
        assert result["pool"]["pool_id"] == "0xbeef"
        assert defense.get_manual_pools()["count"] == 1

    @pytest.mark.asyncio
    async def test_add_manual_pool_requires_id(self, defense):
        """A missing pool id is a client error."""
        assert (await defense.add_manual_pool({}))["status"] == 400

    def test_remove_unknown_manual_pool(self, defense):
        """Removing an unknown manual pool is a 404."""
        assert defense.remove_manual_pool("0xbeef")["status"] == 404

    @pytest.mark.asyncio
    async def test_order_book_not_found(self, defense):
        """Missing pool objects surface as 404."""
        assert (await defense.get_pool_order_book("0xbeef"))["status"] == 404

    @pytest.mark.asyncio
    async def test_report_order_validation(self, defense):
        """Incomplete order reports are rejected."""
        result = await defense.report_order({"order_id": "1"})

        assert result["status"] == 400

    def test_check_pool_price(self, defense):
        """Price checks need a registered pool."""
        _register(defense)

        assert defense.check_pool_price(POOL_ID)["needs_buyback"] is False
        assert defense.check_pool_price("0xnope")["status"] == 404


class TestBuybackOperations:
    @pytest.mark.asyncio
    async def test_manual_buyback_unknown_pool(self, defense):
        """Manual buybacks need a registered pool."""
        assert (await defense.manual_buyback("0xnope"))["status"] == 404
        assert (await defense.manual_buyback(""))["status"] == 400

    @pytest.mark.asyncio
    async def test_manual_buyback_needs_trade_price(self, defense, mock_client):
        """Without an observed trade there is no price to act on."""
        _register(defense)

        result = await defense.manual_buyback(POOL_ID)

        assert result["status"] == 409
        assert mock_client.orders == []

    @pytest.mark.asyncio
    async def test_manual_buyback_executes(self, defense, mock_client):
        """Manual buybacks use the last trade price and tier sizing."""
        _register(defense)
        defense.registry.update_last_trade_price(POOL_ID, 980_000)

        result = await defense.manual_buyback(POOL_ID)

        assert result["success"] is True
        assert result["status"] == "executed"
        assert result["calculation"]["quantity"] == 100.0
        assert mock_client.orders[0].price == 1_960_000
        assert defense.get_executions(POOL_ID)["count"] == 1

    @pytest.mark.asyncio
    async def test_pool_stats(self, defense):
        """Per-pool stats include counters and execution counts."""
        _register(defense)
        defense.registry.update_last_trade_price(POOL_ID, 980_000)
        await defense.manual_buyback(POOL_ID)

        stats = defense.get_stats(POOL_ID)

        assert stats["buyback_count"] == 1
        assert stats["total_buyback_amount"] == 98_000_000
        assert stats["executions"] == 1
        assert stats["in_flight"] is False
        assert defense.get_stats("0xnope")["status"] == 404


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_below_floor_sell_is_bought_back(self, defense, mock_client):
        """A below-floor sell seen by the listener ends in one executed buyback."""
        _register(defense)
        mock_client.pages[ORDER_PLACED] = [EventPage(
            data=[placed(price_raw=900_000_000, quantity=3_000_000_000)],
            next_cursor={"txDigest": "tx1", "eventSeq": "0"},
        )]

        await defense.start_listener()
        await defense.stop_listener()

        executions = defense.get_executions()["executions"]
        assert len(executions) == 1
        assert executions[0]["status"] == "executed"
        assert executions[0]["quantity"] == 3.0
        assert mock_client.orders[0].price == 1_800_000
        assert defense.registry.get_vault_by_pool_id(POOL_ID).buyback_count == 1

    @pytest.mark.asyncio
    async def test_status_snapshot(self, defense):
        """Status combines listener, executor and registry views."""
        _register(defense)

        status = defense.get_status()

        assert status["success"] is True
        assert status["listener"]["is_running"] is False
        assert status["executor"]["enabled"] is True
        assert status["registry"]["total_pools"] == 1


class TestMaintenance:
    def test_export_import(self, defense, mock_client, credential):
        """Exported registries import into a fresh facade."""
        _register(defense)
        exported = defense.export_registry()["data"]

        fresh = PriceFloorDefense.create(client=mock_client, credential=credential, log_event=_quiet)
        assert fresh.import_registry(exported) == {"success": True, "loaded": 1}
        assert fresh.import_registry({"pools": "nope"})["status"] == 400
        assert fresh.import_registry({"pools": ["0xa1", 7]}) == {"success": True, "loaded": 0}

    @pytest.mark.asyncio
    async def test_clean_order_cache(self, defense):
        """Cache sweeps report removed and remaining entries."""
        _register(defense)
        await defense.report_order({"order_id": "1", "pool_id": POOL_ID, "price": 1_500_000_000})

        result = defense.clean_order_cache(max_age_ms=0)

        assert result == {"success": True, "removed": 1, "remaining": 0}
