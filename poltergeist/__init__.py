"""Build orchestration: typed targets, builders, persistent state, prioritised scheduling and an engine."""

__version__ = "0.1.0"