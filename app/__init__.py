"""
                Restaurant Checkout Service

Order checkout, table booking and payment reconciliation backend with a
hybrid Mock/Real payment gateway architecture.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
