"""Finality provider core: stores, chain polling, randomness commitment and voting."""

__version__ = "0.1.0"