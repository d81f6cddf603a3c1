"""Delphi Pulse: on-chain trade indexer and P&L accounting for Delphi prediction markets."""

__version__ = "0.1.0"
