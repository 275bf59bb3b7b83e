"""
Fulfillment routing and logistics decisions.
"""
__version__ = "1.0.0"
