"""Agent management for the brokerage."""

from .agents import AgentRegistry

__all__ = ['AgentRegistry']
