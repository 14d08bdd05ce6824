import pytest
from eth_utils import to_checksum_address

from chainmetrics.bootstrap import LOTTERY_STATS, TOTAL_SUPPLY, TVL_CHART, build_runtime
from chainmetrics.config import DEFAULT_RPC_ENDPOINTS, Settings
from chainmetrics.domain.decoding import selector

from conftest import FakeRPC


class TestSettings:

    def test_defaults(self):
        s = Settings.from_env({})
        assert s.rpc_endpoints == DEFAULT_RPC_ENDPOINTS
        assert s.port == 3001
        assert s.lottery_ttl_s == 120
        assert s.lottery_default_start_block is None
        assert s.contracts.token == to_checksum_address("0xcdaaf6f8c59962c7807c62175e21487cb640d3b8")

    def test_addresses_are_checksummed(self):
        s = Settings.from_env({"STAKING_POOL_ADDRESS": "0x62097798b95748d315adb423ff58dae11b3c5e52"})
        assert s.contracts.staking == to_checksum_address("0x62097798b95748d315adb423ff58dae11b3c5e52")
        assert s.contracts.staking != s.contracts.staking.lower()

    def test_overrides(self):
        s = Settings.from_env({
            "RPC_ENDPOINTS": "https://a.example, https://b.example",
            "LOTTERY_DEFAULT_START_BLOCK": "123",
            "PORT": "8080",
            "LOG_LEVEL": "debug",
        })
        assert s.rpc_endpoints == ("https://a.example", "https://b.example")
        assert s.lottery_default_start_block == 123
        assert s.port == 8080
        assert s.log_level == "DEBUG"

    @pytest.mark.parametrize("env", [
        {"LOTTERY_TTL_S": "soon"},
        {"PORT": "70000"},
        {"MAX_RANGE_SIZE": "0"},
        {"REFRESH_JITTER_S": "-1"},
        {"ORACLE_ADDRESS": "0x1234"},
    ])
    def test_invalid_values_raise(self, env):
        with pytest.raises(ValueError):
            Settings.from_env(env)


class TestRuntime:

    @pytest.mark.asyncio
    async def test_registered_metrics_and_supply_read(self):
        settings = Settings.from_env({})
        token = settings.contracts.token
        rpc = FakeRPC(uints={(token, selector("totalSupply()")): 42})
        rt = build_runtime(settings, clients=[rpc])
        try:
            for key in (LOTTERY_STATS, TVL_CHART, TOTAL_SUPPLY):
                assert rt.service.spec(key).key == key
            assert [s.key for s in rt.schedules] == [LOTTERY_STATS, TVL_CHART]
            res = await rt.service.get(TOTAL_SUPPLY)
            assert res.value == 42 and res.source == "fresh"
        finally:
            await rt.aclose()
        assert rpc.closed
