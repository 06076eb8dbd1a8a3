"""Tests for the web3 market connector, with the web3 client mocked out."""

from unittest.mock import MagicMock, patch

import pytest
from web3.exceptions import ContractLogicError

from src.execution.chain_connector import Web3MarketConnector
from src.execution.connector import Asset, OpKind, TradeOp
from src.mirror.errors import ConnectorError, FeeCeilingExceeded, SlippageExceeded
from src.mirror.models import ConnectorRef, Outcome

WALLET = "0x" + "1" * 40

REF = ConnectorRef(
    market_address="0x" + "a" * 40,
    collateral_token="0x" + "c" * 40,
    condition_id="0x" + "ab" * 32,
)


def call_returning(value):
    return MagicMock(call=MagicMock(return_value=value))


@pytest.fixture
def chain():
    connector = Web3MarketConnector(rpc_url="http://localhost:8545", private_key="0x" + "1" * 64)
    connector._w3 = MagicMock()
    connector._account = MagicMock(address=WALLET)
    connector._initialized = True
    yield connector
    connector._executor.shutdown(wait=False)


@pytest.fixture
def market():
    return MagicMock()


# ------------------------------------------------------------------
# Fees
# ------------------------------------------------------------------


class TestFeeParams:
    def test_base_fee_doubled_plus_priority(self, chain):
        chain._w3.eth.get_block.return_value = {"baseFeePerGas": 100}
        chain._w3.eth.max_priority_fee = 10

        assert chain._fee_params_sync(1_000) == {"maxFeePerGas": 210, "maxPriorityFeePerGas": 10}

    def test_max_fee_capped_at_ceiling(self, chain):
        chain._w3.eth.get_block.return_value = {"baseFeePerGas": 100}
        chain._w3.eth.max_priority_fee = 10

        assert chain._fee_params_sync(150)["maxFeePerGas"] == 150

    def test_base_fee_above_ceiling(self, chain):
        chain._w3.eth.get_block.return_value = {"baseFeePerGas": 500}
        chain._w3.eth.max_priority_fee = 10

        with pytest.raises(FeeCeilingExceeded):
            chain._fee_params_sync(400)


# ------------------------------------------------------------------
# Error mapping
# ------------------------------------------------------------------


class TestErrorMapping:
    async def test_revert_is_fatal(self, chain):
        def reverts():
            raise ContractLogicError("execution reverted")

        with pytest.raises(ConnectorError) as exc_info:
            await chain._run(reverts)
        assert exc_info.value.transient is False

    async def test_network_error_is_transient(self, chain):
        def drops():
            raise ConnectionError("connection reset")

        with pytest.raises(ConnectorError) as exc_info:
            await chain._run(drops)
        assert exc_info.value.transient is True

    async def test_mirror_errors_pass_through(self, chain):
        def slips():
            raise SlippageExceeded("too little")

        with pytest.raises(SlippageExceeded):
            await chain._run(slips)


# ------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------


class TestReads:
    async def test_position_allowance_is_flag(self, chain, market):
        ctf = MagicMock()
        ctf.functions.isApprovedForAll.return_value = call_returning(True)
        with patch.object(chain, "_ctf", return_value=ctf):
            assert await chain.get_allowance(REF, Asset.POSITION) == 1

    async def test_sell_estimate_searches_max_return(self, chain, market):
        # Selling costs two tokens per collateral unit returned
        market.functions.calcSellAmount.side_effect = lambda r, i: call_returning(r * 2)
        op = TradeOp(OpKind.SELL, REF, Outcome.YES, token_amount=101, market_id="m1")

        with patch.object(chain, "_market", return_value=market):
            assert await chain.estimate_output(op) == 50

    async def test_sell_estimate_treats_revert_as_too_large(self, chain, market):
        def calc(r, i):
            if r > 30:
                return MagicMock(call=MagicMock(side_effect=ContractLogicError("too large")))
            return call_returning(r)

        market.functions.calcSellAmount.side_effect = calc
        op = TradeOp(OpKind.SELL, REF, Outcome.NO, token_amount=100, market_id="m1")

        with patch.object(chain, "_market", return_value=market):
            assert await chain.estimate_output(op) == 30

    async def test_buy_estimate(self, chain, market):
        market.functions.calcBuyAmount.return_value = call_returning(12_345)
        op = TradeOp(OpKind.BUY, REF, Outcome.YES, amount=10_000, market_id="m1")

        with patch.object(chain, "_market", return_value=market):
            assert await chain.estimate_output(op) == 12_345
        market.functions.calcBuyAmount.assert_called_once_with(10_000, 1)


# ------------------------------------------------------------------
# Submit / confirm
# ------------------------------------------------------------------


class TestSubmit:
    async def test_buy_slippage_precheck(self, chain, market):
        market.functions.calcBuyAmount.return_value = call_returning(90)
        op = TradeOp(OpKind.BUY, REF, Outcome.YES, amount=100, market_id="m1")

        with patch.object(chain, "_market", return_value=market), \
                patch.object(chain, "_transact_sync") as transact:
            with pytest.raises(SlippageExceeded):
                await chain.submit(op, 95, 10 ** 9)
        transact.assert_not_called()

    async def test_buy_submits_with_min_tokens(self, chain, market):
        market.functions.calcBuyAmount.return_value = call_returning(100)
        op = TradeOp(OpKind.BUY, REF, Outcome.NO, amount=100, market_id="m1")

        with patch.object(chain, "_market", return_value=market), \
                patch.object(chain, "_transact_sync", return_value="0xhash") as transact:
            result = await chain.submit(op, 98, 10 ** 9)

        assert result.handle == "0xhash"
        assert result.cost == 100
        market.functions.buy.assert_called_once_with(100, 0, 98)
        assert transact.call_args[0][1] == 10 ** 9

    async def test_confirmation_reports_sell_output_and_fee(self, chain, market):
        market.functions.calcSellAmount.return_value = call_returning(40)
        op = TradeOp(OpKind.SELL, REF, Outcome.YES, amount=25, token_amount=50, market_id="m1")
        receipt = {"status": 1, "gasUsed": 100_000, "effectiveGasPrice": 7, "blockNumber": 10}

        with patch.object(chain, "_market", return_value=market), \
                patch.object(chain, "_transact_sync", return_value="0xsell"), \
                patch.object(chain, "_wait_sync", return_value=receipt):
            submitted = await chain.submit(op, 25, 10 ** 9)
            confirmation = await chain.await_confirmation(submitted.handle, 1)

        market.functions.sell.assert_called_once_with(25, 1, 50)
        assert confirmation.success is True
        assert confirmation.output_amount == 25
        assert confirmation.fee_paid == 700_000

    async def test_reverted_transaction(self, chain):
        receipt = {"status": 0, "gasUsed": 50_000, "effectiveGasPrice": 2, "blockNumber": 10}
        with patch.object(chain, "_wait_sync", return_value=receipt):
            confirmation = await chain.await_confirmation("0xunknown", 1)

        assert confirmation.success is False
        assert confirmation.fee_paid == 100_000
