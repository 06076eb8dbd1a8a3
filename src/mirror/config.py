"""
Bot configuration: defaults, optional YAML file, environment overrides.
"""

import logging
import os
import re
from dataclasses import dataclass, fields
from decimal import Decimal
from pathlib import Path
from typing import Optional

import yaml

from .errors import InvalidConfig
from .sizer import validate_bounds

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

DEFAULT_FEED_URL = "https://api.limitless.exchange"


@dataclass
class MirrorConfig:
    # Network
    rpc_url: Optional[str] = None
    chain_id: int = 8453
    private_key: Optional[str] = None
    target_wallet: Optional[str] = None
    feed_url: str = DEFAULT_FEED_URL

    # Polling
    poll_interval_ms: int = 15000
    summary_interval_s: int = 300

    # Sizing
    bet_multiplier: Decimal = Decimal("1")
    min_bet_usdc: Decimal = Decimal("1")
    max_bet_usdc: Decimal = Decimal("100")

    # Execution guards
    slippage_bps: int = 200
    sell_haircut_bps: int = 100
    max_gas_eth: Decimal = Decimal("0.015")
    gas_price_gwei: Decimal = Decimal("0.005")
    confirmations: int = 1
    confirmation_timeout_s: int = 120
    increase_threshold: Decimal = Decimal("0.10")
    max_concurrency: int = 1
    read_retry_attempts: int = 3
    read_retry_backoff_s: float = 1.0

    # Persistence
    state_file: str = "data/state.json"
    trades_file: str = "data/trades.json"
    trades_csv: str = "data/trades.csv"

    # Simulation
    starting_balance_usdc: Decimal = Decimal("100")
    fee_bps: int = 100
    sim_trades_file: str = "data/sim_trades.json"

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def max_fee_budget_wei(self) -> int:
        return int(self.max_gas_eth * Decimal(10) ** 18)

    @property
    def gas_price_wei(self) -> int:
        return int(self.gas_price_gwei * Decimal(10) ** 9)

    def validate(self):
        """Raise InvalidConfig on settings that can never produce a correct trade."""
        validate_bounds(self.bet_multiplier, self.min_bet_usdc, self.max_bet_usdc)
        if self.poll_interval_ms <= 0:
            raise InvalidConfig(f"poll interval must be positive, got {self.poll_interval_ms}")
        for name in ("slippage_bps", "sell_haircut_bps", "fee_bps"):
            value = getattr(self, name)
            if not 0 <= value < 10_000:
                raise InvalidConfig(f"{name} must be in [0, 10000), got {value}")
        if self.confirmations < 1:
            raise InvalidConfig(f"confirmations must be >= 1, got {self.confirmations}")
        if self.max_concurrency < 1:
            raise InvalidConfig(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.read_retry_attempts < 1:
            raise InvalidConfig(f"read_retry_attempts must be >= 1, got {self.read_retry_attempts}")
        if self.increase_threshold < 0:
            raise InvalidConfig(f"increase_threshold must be >= 0, got {self.increase_threshold}")

    def validate_live(self):
        """validate() plus everything needed to sign transactions."""
        self.validate()
        if not self.rpc_url:
            raise InvalidConfig("RPC_URL is required for live trading")
        if not self.target_wallet or not ADDRESS_RE.match(self.target_wallet):
            raise InvalidConfig(f"TARGET_WALLET is not a valid address: {self.target_wallet!r}")
        if not self.private_key:
            raise InvalidConfig("PRIVATE_KEY is required for live trading")


# env var -> field name
ENV_OVERRIDES = {
    "RPC_URL": "rpc_url",
    "CHAIN_ID": "chain_id",
    "PRIVATE_KEY": "private_key",
    "TARGET_WALLET": "target_wallet",
    "FEED_URL": "feed_url",
    "POLL_INTERVAL_MS": "poll_interval_ms",
    "SUMMARY_INTERVAL_S": "summary_interval_s",
    "BET_MULTIPLIER": "bet_multiplier",
    "MIN_BET_USDC": "min_bet_usdc",
    "MAX_BET_USDC": "max_bet_usdc",
    "SLIPPAGE_BPS": "slippage_bps",
    "SELL_HAIRCUT_BPS": "sell_haircut_bps",
    "MAX_GAS_ETH": "max_gas_eth",
    "GAS_PRICE_GWEI": "gas_price_gwei",
    "CONFIRMATIONS": "confirmations",
    "CONFIRMATION_TIMEOUT_S": "confirmation_timeout_s",
    "INCREASE_THRESHOLD": "increase_threshold",
    "MAX_CONCURRENCY": "max_concurrency",
    "READ_RETRY_ATTEMPTS": "read_retry_attempts",
    "READ_RETRY_BACKOFF_S": "read_retry_backoff_s",
    "STATE_FILE": "state_file",
    "TRADES_FILE": "trades_file",
    "TRADES_CSV": "trades_csv",
    "STARTING_BALANCE_USDC": "starting_balance_usdc",
    "FEE_BPS": "fee_bps",
    "SIM_TRADES_FILE": "sim_trades_file",
}


def _coerce(name: str, raw):
    """Convert a YAML/env value to the type of the MirrorConfig field."""
    default = MirrorConfig.__dataclass_fields__[name].default
    if raw is None:
        return default
    try:
        if isinstance(default, Decimal):
            return Decimal(str(raw))
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except (ArithmeticError, ValueError) as e:
        raise InvalidConfig(f"Invalid value for {name}: {raw!r} ({e})")
    return str(raw)


def load_config(path: Optional[str] = None, env: Optional[dict] = None) -> MirrorConfig:
    """
    Build a MirrorConfig from defaults, then `path` (YAML), then environment.

    Unknown YAML keys are ignored with a warning. Call .validate() before use.
    """
    env = os.environ if env is None else env
    values = {}

    if path:
        config_file = Path(path)
        if not config_file.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
        else:
            with open(config_file) as f:
                data = yaml.safe_load(f) or {}
            known = {f.name for f in fields(MirrorConfig)}
            for key, raw in data.items():
                if key not in known:
                    logger.warning(f"Unknown config key ignored: {key}")
                    continue
                values[key] = _coerce(key, raw)

    for env_name, field_name in ENV_OVERRIDES.items():
        raw = env.get(env_name)
        if raw not in (None, ""):
            values[field_name] = _coerce(field_name, raw)

    return MirrorConfig(**values)
