"""podsettle - settles pump-or-dump bets from on-chain events and price samples."""

__version__ = "0.1.0"
