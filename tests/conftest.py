"""
Shared test fixtures for the mirror bot test suite.
All tests run offline against a scripted in-memory connector.
"""

import itertools
import zlib
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest

from src.execution.connector import (
    Asset,
    ConfirmationResult,
    ExchangeConnector,
    OpKind,
    SubmitResult,
    TradeOp,
)
from src.execution.retry import RetryPolicy
from src.ledger.trade_ledger import TradeLedger
from src.mirror.config import MirrorConfig
from src.mirror.errors import ConfirmationTimeout, FeeCeilingExceeded
from src.mirror.models import ConnectorRef, Outcome, PositionSnapshot
from src.positions.orchestrator import ReplicationOrchestrator
from src.positions.state_store import StateStore
from src.reporting.events import RecordingEventSink

USDC = 10 ** 6


def market_ref(market_id: str) -> ConnectorRef:
    """Deterministic, tradable contract references for a market slug."""
    suffix = format(zlib.crc32(market_id.encode()), "08x")
    return ConnectorRef(
        market_address="0x" + "a" * 32 + suffix,
        collateral_token="0x" + "c" * 40,
        collateral_decimals=6,
        condition_id="0x" + "ab" * 32,
    )


@pytest.fixture
def make_snapshot():
    """Factory for PositionSnapshot. Balances in token units, costs in USDC."""
    def _factory(market_id="market-1", yes=0, no=0, **overrides):
        defaults = {
            "market_id": market_id,
            "yes_balance": yes,
            "no_balance": no,
            "title": f"Will {market_id} happen?",
            "ref": market_ref(market_id),
        }
        defaults.update(overrides)
        for key in ("yes_cost", "no_cost", "yes_value", "no_value"):
            if defaults.get(key) is not None:
                defaults[key] = Decimal(str(defaults[key]))
        return PositionSnapshot(**defaults)

    return _factory


class FakeConnector(ExchangeConnector):
    """
    Scripted connector. Buys return 1 token per collateral unit, sells return
    `sell_return` (default: the tokens sold). Every submit is recorded in
    `submitted` as (kind, market_id, outcome, amount, token_amount).
    """

    def __init__(self, balance: int = 1_000 * USDC):
        self.balance = balance
        self.allowances: Dict[Tuple[str, Asset], int] = {}
        self.tokens: Dict[Tuple[str, Outcome], int] = {}
        self.submitted: List[tuple] = []
        self.approvals: List[tuple] = []

        self.sell_return: Optional[int] = None
        self.network_fee = 0
        self.approve_result = True
        self.fail_submit_for: Dict[str, Exception] = {}
        self.timeout_confirmations = False
        self.revert_confirmations = False

        self._pending: Dict[str, Tuple[TradeOp, int]] = {}
        self._ids = itertools.count(1)

    async def get_allowance(self, ref, asset):
        return self.allowances.get((ref.market_address, asset), 0)

    async def approve(self, ref, asset, amount):
        self.approvals.append((ref.market_address, asset, amount))
        if self.approve_result:
            self.allowances[(ref.market_address, asset)] = amount
        return self.approve_result

    async def get_balance(self, ref, asset, outcome=None):
        if asset is Asset.COLLATERAL:
            return self.balance
        return self.tokens.get((ref.market_address, outcome), 0)

    async def estimate_output(self, op):
        if op.kind is OpKind.BUY:
            return op.amount
        if op.kind is OpKind.SELL:
            return self.sell_return if self.sell_return is not None else op.token_amount
        return op.token_amount

    async def estimate_effort(self, op):
        return 100_000

    async def submit(self, op, min_acceptable_output, fee_ceiling):
        error = self.fail_submit_for.get(op.market_id)
        if error is not None:
            raise error
        if self.network_fee > fee_ceiling:
            raise FeeCeilingExceeded(f"fee {self.network_fee} > {fee_ceiling}", op.market_id)

        self.submitted.append((op.kind, op.market_id, op.outcome, op.amount, op.token_amount))
        handle = f"0xtx{next(self._ids)}"
        key = (op.ref.market_address, op.outcome)

        if op.kind is OpKind.BUY:
            self.balance -= op.amount
            self.tokens[key] = self.tokens.get(key, 0) + op.amount
            self._pending[handle] = (op, op.amount)
            return SubmitResult(handle=handle, cost=op.amount)

        payout = await self.estimate_output(op)
        self.tokens.pop(key, None)
        self.balance += payout
        self._pending[handle] = (op, payout)
        return SubmitResult(handle=handle)

    async def await_confirmation(self, handle, confirmations):
        if self.timeout_confirmations:
            raise ConfirmationTimeout(f"{handle} not mined", handle=handle)
        op, output = self._pending.pop(handle)
        if self.revert_confirmations:
            return ConfirmationResult(success=False)
        return ConfirmationResult(success=True, output_amount=output, fee_paid=21_000)

    def kinds(self) -> List[OpKind]:
        return [s[0] for s in self.submitted]


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def ledger(tmp_path):
    return TradeLedger(str(tmp_path / "trades.json"))


@pytest.fixture
def sink():
    return RecordingEventSink()


@pytest.fixture
def config():
    return MirrorConfig(
        bet_multiplier=Decimal("1"),
        min_bet_usdc=Decimal("1"),
        max_bet_usdc=Decimal("100"),
        read_retry_attempts=1,
        read_retry_backoff_s=0,
    )


@pytest.fixture
def make_orchestrator(connector, ledger, sink, config, tmp_path):
    """Factory for an orchestrator wired to the fake connector."""
    def _factory(replicate_initial=False, state_file=None, **overrides):
        kwargs = {
            "connector": connector,
            "ledger": ledger,
            "config": config,
            "state_store": StateStore(state_file),
            "sink": sink,
            "retry": RetryPolicy(attempts=1, backoff=0),
            "replicate_initial": replicate_initial,
        }
        kwargs.update(overrides)
        return ReplicationOrchestrator(**kwargs)

    return _factory
