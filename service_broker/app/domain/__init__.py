"""
Domain helpers for the Broker Service.
"""

from .models import AccessDecision, CallState, interpret_decision

__all__ = ["AccessDecision", "CallState", "interpret_decision"]
