"""Convoy: fleet deployment orchestrator for containerized services."""

__version__ = "0.1.0"
