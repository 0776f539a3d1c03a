"""Trade vault runtime: on-chain vault model and off-chain orchestration client."""

__version__ = "0.1.0"
