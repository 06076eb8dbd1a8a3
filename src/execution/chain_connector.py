"""
On-chain execution for Limitless fixed-product AMM markets on Base, via web3.py.

This module handles ONLY contract calls and transactions. Position tracking
and ledger entries are the orchestrator's job.

IMPORTANT: This executes REAL trades with REAL money. Use with caution.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Dict, Optional

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from src.mirror.errors import (
    ConfirmationTimeout,
    ConnectorError,
    FeeCeilingExceeded,
    MirrorError,
    SlippageExceeded,
)
from src.mirror.models import ConnectorRef, Outcome

from .connector import (
    Asset,
    ConfirmationResult,
    ExchangeConnector,
    OpKind,
    SubmitResult,
    TradeOp,
    padded_effort,
)
from .redeemer import condition_bytes, redeem_calldata

logger = logging.getLogger(__name__)

BASE_CHAIN_ID = 8453

MARKET_ABI = [
    {"inputs": [{"name": "investmentAmount", "type": "uint256"}, {"name": "outcomeIndex", "type": "uint256"}],
     "name": "calcBuyAmount", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "returnAmount", "type": "uint256"}, {"name": "outcomeIndex", "type": "uint256"}],
     "name": "calcSellAmount", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "investmentAmount", "type": "uint256"}, {"name": "outcomeIndex", "type": "uint256"},
                {"name": "minOutcomeTokensToBuy", "type": "uint256"}],
     "name": "buy", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "returnAmount", "type": "uint256"}, {"name": "outcomeIndex", "type": "uint256"},
                {"name": "maxOutcomeTokensToSell", "type": "uint256"}],
     "name": "sell", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "index", "type": "uint256"}],
     "name": "positionId", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "conditionalTokens", "outputs": [{"name": "", "type": "address"}],
     "stateMutability": "view", "type": "function"},
    {"anonymous": False, "inputs": [
        {"indexed": True, "name": "buyer", "type": "address"},
        {"indexed": False, "name": "investmentAmount", "type": "uint256"},
        {"indexed": False, "name": "feeAmount", "type": "uint256"},
        {"indexed": True, "name": "outcomeIndex", "type": "uint256"},
        {"indexed": False, "name": "outcomeTokensBought", "type": "uint256"}],
     "name": "FPMMBuy", "type": "event"},
]

ERC20_ABI = [
    {"inputs": [{"name": "owner", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "name": "allowance", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "name": "approve", "outputs": [{"name": "", "type": "bool"}],
     "stateMutability": "nonpayable", "type": "function"},
]

CTF_ABI = [
    {"inputs": [{"name": "account", "type": "address"}, {"name": "id", "type": "uint256"}],
     "name": "balanceOf", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "owner", "type": "address"}, {"name": "operator", "type": "address"}],
     "name": "isApprovedForAll", "outputs": [{"name": "", "type": "bool"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "operator", "type": "address"}, {"name": "approved", "type": "bool"}],
     "name": "setApprovalForAll", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "conditionId", "type": "bytes32"}, {"name": "index", "type": "uint256"}],
     "name": "payoutNumerators", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "conditionId", "type": "bytes32"}],
     "name": "payoutDenominator", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
]

# Binary search steps when estimating the return for a full sell
SELL_SEARCH_STEPS = 64


@dataclass
class _Submitted:
    op: TradeOp
    expected_output: int


class Web3MarketConnector(ExchangeConnector):
    """
    ExchangeConnector for Limitless AMM markets.

    Blocking web3 calls run in a thread pool so the event loop never stalls.
    Read failures surface as ConnectorError(transient=True), contract reverts
    as ConnectorError(transient=False).
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        chain_id: int = BASE_CHAIN_ID,
        max_fee_budget_wei: int = 15 * 10**15,
        fallback_gas_price_wei: int = 5 * 10**6,
        confirmation_timeout: float = 120,
        poll_interval: float = 2.0,
    ):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.max_fee_budget_wei = max_fee_budget_wei
        self.fallback_gas_price_wei = fallback_gas_price_wei
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._private_key = private_key

        self._w3: Optional[Web3] = None
        self._account = None
        self._executor = ThreadPoolExecutor(max_workers=2)
        self._initialized = False

        self._ctf_by_market: Dict[str, str] = {}
        self._submitted: Dict[str, _Submitted] = {}

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def initialize(self) -> bool:
        """Connect, load the signing account and verify the network."""
        if self._initialized:
            return True

        try:
            self._w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": 15}))
            self._account = self._w3.eth.account.from_key(self._private_key)
            network_chain_id = self._w3.eth.chain_id
        except Exception as e:
            logger.error(f"Failed to initialize chain connector: {e}")
            return False

        if network_chain_id != self.chain_id:
            logger.error(f"Wrong network: RPC reports chain {network_chain_id}, expected {self.chain_id}")
            return False

        self._initialized = True
        logger.info(f"Chain connector initialized | chain {self.chain_id} | wallet {self.address}")
        return True

    # ------------------------------------------------------------------
    # Executor plumbing
    # ------------------------------------------------------------------

    async def _run(self, fn, *args):
        if not self._initialized and not self.initialize():
            raise ConnectorError("chain connector not initialized", transient=True)

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, partial(fn, *args))
        except MirrorError:
            raise
        except ContractLogicError as e:
            raise ConnectorError(f"contract reverted: {e}", transient=False)
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise ConnectorError(str(e), transient=True)
        except ValueError as e:
            raise ConnectorError(str(e), transient=False)

    def _market(self, ref: ConnectorRef):
        return self._w3.eth.contract(address=Web3.to_checksum_address(ref.market_address), abi=MARKET_ABI)

    def _erc20(self, ref: ConnectorRef):
        return self._w3.eth.contract(address=Web3.to_checksum_address(ref.collateral_token), abi=ERC20_ABI)

    def _ctf(self, ref: ConnectorRef):
        ctf_address = self._ctf_by_market.get(ref.market_address)
        if ctf_address is None:
            ctf_address = self._market(ref).functions.conditionalTokens().call()
            self._ctf_by_market[ref.market_address] = ctf_address
        return self._w3.eth.contract(address=Web3.to_checksum_address(ctf_address), abi=CTF_ABI)

    def _position_id(self, ref: ConnectorRef, outcome: Outcome) -> int:
        return self._market(ref).functions.positionId(int(outcome)).call()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _get_allowance_sync(self, ref: ConnectorRef, asset: Asset) -> int:
        market = Web3.to_checksum_address(ref.market_address)
        if asset is Asset.COLLATERAL:
            return self._erc20(ref).functions.allowance(self.address, market).call()
        approved = self._ctf(ref).functions.isApprovedForAll(self.address, market).call()
        return 1 if approved else 0

    async def get_allowance(self, ref: ConnectorRef, asset: Asset) -> int:
        return await self._run(self._get_allowance_sync, ref, asset)

    def _get_balance_sync(self, ref: ConnectorRef, asset: Asset, outcome: Optional[Outcome]) -> int:
        if asset is Asset.COLLATERAL:
            return self._erc20(ref).functions.balanceOf(self.address).call()
        token_id = self._position_id(ref, outcome)
        return self._ctf(ref).functions.balanceOf(self.address, token_id).call()

    async def get_balance(self, ref: ConnectorRef, asset: Asset,
                          outcome: Optional[Outcome] = None) -> int:
        return await self._run(self._get_balance_sync, ref, asset, outcome)

    def _estimate_sell_return(self, op: TradeOp) -> int:
        """Largest return whose required token amount fits in op.token_amount."""
        market = self._market(op.ref)
        lo, hi = 0, op.token_amount
        for _ in range(SELL_SEARCH_STEPS):
            if lo >= hi:
                break
            mid = (lo + hi + 1) // 2
            try:
                needed = market.functions.calcSellAmount(mid, int(op.outcome)).call()
            except ContractLogicError:
                needed = None
            if needed is not None and needed <= op.token_amount:
                lo = mid
            else:
                hi = mid - 1
        return lo

    def _estimate_redeem_payout(self, op: TradeOp) -> int:
        ctf = self._ctf(op.ref)
        condition = condition_bytes(op.ref.condition_id)
        denominator = ctf.functions.payoutDenominator(condition).call()
        if denominator == 0:
            return 0
        numerator = ctf.functions.payoutNumerators(condition, int(op.outcome)).call()
        return op.token_amount * numerator // denominator

    def _estimate_output_sync(self, op: TradeOp) -> int:
        if op.kind is OpKind.BUY:
            return self._market(op.ref).functions.calcBuyAmount(op.amount, int(op.outcome)).call()
        if op.kind is OpKind.SELL:
            return self._estimate_sell_return(op)
        return self._estimate_redeem_payout(op)

    async def estimate_output(self, op: TradeOp) -> int:
        return await self._run(self._estimate_output_sync, op)

    def _call_for(self, op: TradeOp, min_output: int = 0):
        """Contract call (or raw {to, data} dict for redemption) executing `op`."""
        if op.kind is OpKind.BUY:
            return self._market(op.ref).functions.buy(op.amount, int(op.outcome), min_output)
        if op.kind is OpKind.SELL:
            return_amount = op.amount or min_output
            return self._market(op.ref).functions.sell(return_amount, int(op.outcome), op.token_amount)
        return {
            "to": self._ctf(op.ref).address,
            "data": redeem_calldata(Web3.to_checksum_address(op.ref.collateral_token), op.ref.condition_id),
        }

    def _estimate_gas_sync(self, call) -> int:
        if isinstance(call, dict):
            return self._w3.eth.estimate_gas({"from": self.address, **call})
        return call.estimate_gas({"from": self.address})

    async def estimate_effort(self, op: TradeOp) -> int:
        return await self._run(lambda: self._estimate_gas_sync(self._call_for(op)))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _fee_params_sync(self, fee_ceiling: int) -> dict:
        """EIP-1559 fees capped at fee_ceiling per gas. Raises FeeCeilingExceeded."""
        block = self._w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        try:
            priority = self._w3.eth.max_priority_fee
        except (Web3Exception, ValueError):
            priority = self.fallback_gas_price_wei

        if base_fee is None:
            suggested = self._w3.eth.gas_price or self.fallback_gas_price_wei
        else:
            if base_fee > fee_ceiling:
                raise FeeCeilingExceeded(
                    f"base fee {base_fee} wei/gas above ceiling {fee_ceiling}"
                )
            suggested = base_fee * 2 + priority

        max_fee = min(suggested, fee_ceiling)
        return {"maxFeePerGas": max_fee, "maxPriorityFeePerGas": min(priority, max_fee)}

    def _transact_sync(self, call, fee_ceiling: Optional[int] = None) -> str:
        gas_limit = padded_effort(self._estimate_gas_sync(call))
        if fee_ceiling is None:
            fee_ceiling = self.max_fee_budget_wei // gas_limit

        params = {
            "from": self.address,
            "nonce": self._w3.eth.get_transaction_count(self.address, "pending"),
            "chainId": self.chain_id,
            "gas": gas_limit,
            **self._fee_params_sync(fee_ceiling),
        }
        if isinstance(call, dict):
            tx = {**call, **params}
        else:
            tx = call.build_transaction(params)

        signed = self._account.sign_transaction(tx)
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        return self._w3.to_hex(tx_hash)

    def _wait_sync(self, handle: str, confirmations: int):
        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(
                handle, timeout=self.confirmation_timeout, poll_latency=self.poll_interval,
            )
        except TimeExhausted:
            raise ConfirmationTimeout(f"no receipt for {handle} after {self.confirmation_timeout}s", handle=handle)

        deadline = time.monotonic() + self.confirmation_timeout
        while self._w3.eth.block_number - receipt["blockNumber"] + 1 < confirmations:
            if time.monotonic() > deadline:
                raise ConfirmationTimeout(f"{handle} mined but not {confirmations} confirmations deep", handle=handle)
            time.sleep(self.poll_interval)
        return receipt

    def _approve_sync(self, ref: ConnectorRef, asset: Asset, amount: int) -> bool:
        market = Web3.to_checksum_address(ref.market_address)
        if asset is Asset.POSITION:
            tx = self._transact_sync(self._ctf(ref).functions.setApprovalForAll(market, True))
            return self._wait_sync(tx, 1)["status"] == 1

        token = self._erc20(ref)
        current = token.functions.allowance(self.address, market).call()
        # Reset to 0 first for tokens that refuse non-zero -> non-zero changes
        if current > 0:
            tx0 = self._transact_sync(token.functions.approve(market, 0))
            if self._wait_sync(tx0, 1)["status"] != 1:
                return False
        tx = self._transact_sync(token.functions.approve(market, amount))
        return self._wait_sync(tx, 1)["status"] == 1

    async def approve(self, ref: ConnectorRef, asset: Asset, amount: int) -> bool:
        return await self._run(self._approve_sync, ref, asset, amount)

    def _submit_sync(self, op: TradeOp, min_acceptable_output: int, fee_ceiling: int) -> SubmitResult:
        if op.kind is OpKind.BUY:
            expected = self._market(op.ref).functions.calcBuyAmount(op.amount, int(op.outcome)).call()
            if expected < min_acceptable_output:
                raise SlippageExceeded(f"expected {expected} tokens < min {min_acceptable_output}", op.market_id)
        elif op.kind is OpKind.SELL:
            return_amount = op.amount or min_acceptable_output
            needed = self._market(op.ref).functions.calcSellAmount(return_amount, int(op.outcome)).call()
            if needed > op.token_amount:
                raise SlippageExceeded(
                    f"return {return_amount} needs {needed} tokens, holding {op.token_amount}", op.market_id,
                )
            expected = return_amount
        else:
            expected = min_acceptable_output

        handle = self._transact_sync(self._call_for(op, min_acceptable_output), fee_ceiling)
        logger.info(f"LIVE {op.kind.value} {op.outcome.label} submitted: {handle}")
        self._submitted[handle] = _Submitted(op=op, expected_output=expected)
        return SubmitResult(handle=handle, cost=op.amount if op.kind is OpKind.BUY else 0)

    async def submit(self, op: TradeOp, min_acceptable_output: int,
                     fee_ceiling: int) -> SubmitResult:
        return await self._run(self._submit_sync, op, min_acceptable_output, fee_ceiling)

    def _bought_tokens(self, op: TradeOp, receipt) -> Optional[int]:
        try:
            logs = self._market(op.ref).events.FPMMBuy().process_receipt(receipt)
        except Exception as e:
            logger.debug(f"Could not decode FPMMBuy log: {e}")
            return None
        for log in logs:
            if log["args"]["buyer"].lower() == self.address.lower():
                return log["args"]["outcomeTokensBought"]
        return None

    def _await_confirmation_sync(self, handle: str, confirmations: int) -> ConfirmationResult:
        receipt = self._wait_sync(handle, confirmations)
        submitted = self._submitted.pop(handle, None)
        fee_paid = receipt.get("gasUsed", 0) * receipt.get("effectiveGasPrice", 0)

        if receipt["status"] != 1:
            logger.warning(f"Transaction {handle} reverted")
            return ConfirmationResult(success=False, fee_paid=fee_paid)

        output = 0
        if submitted is not None:
            output = submitted.expected_output
            if submitted.op.kind is OpKind.BUY:
                bought = self._bought_tokens(submitted.op, receipt)
                if bought is not None:
                    output = bought
        return ConfirmationResult(success=True, output_amount=output, fee_paid=fee_paid)

    async def await_confirmation(self, handle: str, confirmations: int) -> ConfirmationResult:
        return await self._run(self._await_confirmation_sync, handle, confirmations)

    async def close(self):
        """Clean shutdown."""
        self._executor.shutdown(wait=False)
        logger.debug("Chain connector shutdown complete")
