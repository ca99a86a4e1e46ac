"""PMS inventory stock-accounting core"""

__version__ = "1.0.0"
