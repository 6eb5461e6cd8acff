"""
Certificate lifecycle engine for cluster mTLS.
"""

__version__ = "1.0.0"
