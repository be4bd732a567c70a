"""
Signal Trader
Multi-user, multi-exchange signal-driven trading engine
"""

__version__ = "1.0.0"
