"""MobilePay recurring payments bridge."""

__version__ = "0.1.0"
