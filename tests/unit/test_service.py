import pytest
from unittest.mock import MagicMock

from keeper.config import Settings
from keeper.error_handling import ConfigurationError
from keeper.external_apis import HttpSettlementClient
from keeper.protection import SimulatedSettlementLayer
from keeper.registry import InMemoryVaultRegistry, MongoVaultRegistry
from keeper.service import build_keeper


def make_settings(**overrides) -> Settings:
    values = dict(MONGODB_URI="mongodb://localhost:27017/test", REGISTRY_BACKEND="memory")
    values.update(overrides)
    return Settings(**values)


class TestBuildKeeper:

    def test_defaults_wire_simulated_settlement(self):
        keeper = build_keeper(make_settings())

        assert isinstance(keeper.registry, InMemoryVaultRegistry)
        assert isinstance(keeper.executor.settlement, SimulatedSettlementLayer)
        assert keeper.synchronizer is None
        assert keeper.scheduler.interval_seconds == 60
        assert keeper.scheduler.auto_remediate_unresolved is False
        assert keeper.executor.max_exit_percentage == 50

    def test_http_settlement_requires_url(self):
        with pytest.raises(ConfigurationError, match="SETTLEMENT_URL"):
            build_keeper(make_settings(SETTLEMENT_MODE="http"))

    def test_http_settlement(self):
        keeper = build_keeper(make_settings(SETTLEMENT_MODE="http", SETTLEMENT_URL="https://settle.test"))

        assert isinstance(keeper.executor.settlement, HttpSettlementClient)
        assert keeper.executor.settlement in keeper.clients

    def test_contract_address_enables_ledger_sync(self):
        keeper = build_keeper(make_settings(VAULT_CONTRACT_ADDRESS="addr_test1wz"))

        assert keeper.synchronizer is not None
        assert keeper.scheduler.synchronizer is keeper.synchronizer
        assert keeper.synchronizer.contract_address == "addr_test1wz"

    def test_mongo_registry_needs_database(self):
        with pytest.raises(ConfigurationError):
            build_keeper(make_settings(REGISTRY_BACKEND="mongo"))

        keeper = build_keeper(make_settings(REGISTRY_BACKEND="mongo"), database=MagicMock())
        assert isinstance(keeper.registry, MongoVaultRegistry)

    @pytest.mark.parametrize("overrides", [
        {"SETTLEMENT_MODE": "manual"},
        {"REGISTRY_BACKEND": "sqlite"},
        {"MONITOR_INTERVAL_SECONDS": 0},
    ])
    def test_invalid_settings(self, overrides):
        with pytest.raises(ConfigurationError):
            build_keeper(make_settings(**overrides))
