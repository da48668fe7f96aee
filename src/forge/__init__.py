"""Execution orchestration engine for agent-driven code generation."""

__version__ = "0.3.0"
