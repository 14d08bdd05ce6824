from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from eth_utils import is_address, to_checksum_address

from .application.use_cases import Contracts
from .domain.value_types import Address

DEFAULT_RPC_ENDPOINTS = (
    "https://polygon-rpc.com",
    "https://rpc.ankr.com/polygon",
    "https://polygon.publicnode.com",
)

DEFAULT_CONTRACTS = {
    "PUSD_TOKEN_ADDRESS": "0xCDaAf6f8c59962c7807c62175E21487CB640d3b8",
    "PUSDLOTTERY_ADDRESS": "0xCCc95e7279813Ee1e4073e39280171C44C12431B",
    "ORACLE_ADDRESS": "0x89c3a9E796dDdB0880bd1d0AC2293340D761AFA0",
    "MINTING_VAULT_ADDRESS": "0x0c164be11d68F766207735BbCE7B02878b04d21E",
    "STAKING_POOL_ADDRESS": "0x62097798b95748d315adb423ff58dae11b3c5E52",
    "SWAP_POOL_ADDRESS": "0xb73e3b7D286f53b5b73A1f44794Ee39Bfb9cb123",
}


def _address(env: Mapping[str, str], name: str) -> Address:
    raw = (env.get(name) or DEFAULT_CONTRACTS[name]).strip()
    if not is_address(raw.lower()):
        raise ValueError(f"{name}: not an address: {raw!r}")
    return Address(to_checksum_address(raw))


def _number(env: Mapping[str, str], name: str, default: float, cast=float):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return cast(default)
    try:
        value = cast(raw.strip())
    except ValueError:
        raise ValueError(f"{name}: expected a number, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{name}: must be >= 0, got {raw!r}")
    return value


@dataclass(slots=True, frozen=True)
class Settings:
    rpc_endpoints: tuple[str, ...]
    contracts: Contracts
    lottery_ttl_s: float = 120
    lottery_soft_refresh_s: float = 60
    tvl_ttl_s: float = 3600
    tvl_soft_refresh_s: float = 3000
    supply_ttl_s: float = 300
    lottery_refresh_interval_s: float = 300
    tvl_refresh_interval_s: float = 3600
    refresh_jitter_s: float = 30
    lottery_default_start_block: int | None = None
    discovery_window_blocks: int = 200_000
    max_range_size: int = 2_000
    inter_batch_delay_s: float = 2
    query_pause_s: float = 5
    state_read_delay_s: float = 1
    refresh_budget_s: float = 600
    rpc_timeout_s: float = 20
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        endpoints = tuple(u.strip() for u in env.get("RPC_ENDPOINTS", "").split(",") if u.strip())
        contracts = Contracts(
            token=_address(env, "PUSD_TOKEN_ADDRESS"),
            lottery=_address(env, "PUSDLOTTERY_ADDRESS"),
            oracle=_address(env, "ORACLE_ADDRESS"),
            vault=_address(env, "MINTING_VAULT_ADDRESS"),
            staking=_address(env, "STAKING_POOL_ADDRESS"),
            swap=_address(env, "SWAP_POOL_ADDRESS"),
        )
        start = env.get("LOTTERY_DEFAULT_START_BLOCK", "").strip()
        port = _number(env, "PORT", 3001, int)
        if not 0 < port < 65536:
            raise ValueError(f"PORT: out of range: {port}")
        max_range = _number(env, "MAX_RANGE_SIZE", 2_000, int)
        if max_range < 1:
            raise ValueError("MAX_RANGE_SIZE: must be >= 1")
        return cls(
            rpc_endpoints=endpoints or DEFAULT_RPC_ENDPOINTS,
            contracts=contracts,
            lottery_ttl_s=_number(env, "LOTTERY_TTL_S", 120),
            lottery_soft_refresh_s=_number(env, "LOTTERY_SOFT_REFRESH_S", 60),
            tvl_ttl_s=_number(env, "TVL_TTL_S", 3600),
            tvl_soft_refresh_s=_number(env, "TVL_SOFT_REFRESH_S", 3000),
            supply_ttl_s=_number(env, "SUPPLY_TTL_S", 300),
            lottery_refresh_interval_s=_number(env, "LOTTERY_REFRESH_INTERVAL_S", 300),
            tvl_refresh_interval_s=_number(env, "TVL_REFRESH_INTERVAL_S", 3600),
            refresh_jitter_s=_number(env, "REFRESH_JITTER_S", 30),
            lottery_default_start_block=_number(env, "LOTTERY_DEFAULT_START_BLOCK", 0, int) if start else None,
            discovery_window_blocks=_number(env, "DISCOVERY_WINDOW_BLOCKS", 200_000, int),
            max_range_size=max_range,
            inter_batch_delay_s=_number(env, "INTER_BATCH_DELAY_S", 2),
            query_pause_s=_number(env, "QUERY_PAUSE_S", 5),
            state_read_delay_s=_number(env, "STATE_READ_DELAY_S", 1),
            refresh_budget_s=_number(env, "REFRESH_BUDGET_S", 600),
            rpc_timeout_s=_number(env, "RPC_TIMEOUT_S", 20),
            host=env.get("HOST", "0.0.0.0"),
            port=port,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
