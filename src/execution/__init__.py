"""
Execution layer: connector interface, on-chain connector and simulated exchange.
"""

# Lazy imports: the simulator depends on the orchestrator, which imports the
# connector interface from this package, and web3 is only needed for live runs
__all__ = [
    "Asset",
    "ExchangeConnector",
    "OpKind",
    "TradeOp",
    "RetryPolicy",
    "SimulatedExchange",
    "SimulationHarness",
    "Web3MarketConnector",
]


def __getattr__(name):
    if name in ("Asset", "ExchangeConnector", "OpKind", "TradeOp"):
        from . import connector
        return getattr(connector, name)
    if name == "RetryPolicy":
        from .retry import RetryPolicy
        return RetryPolicy
    if name in ("SimulatedExchange", "SimulationHarness"):
        from . import simulator
        return getattr(simulator, name)
    if name == "Web3MarketConnector":
        from .chain_connector import Web3MarketConnector
        return Web3MarketConnector
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
