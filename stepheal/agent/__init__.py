"""
Agent Module

Per-step routing decisions.
"""

from .decision_engine import DecisionEngine, DecisionContext, is_auto_generated_id

__all__ = ['DecisionEngine', 'DecisionContext', 'is_auto_generated_id']
