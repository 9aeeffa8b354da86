"""
                        Tableside Ordering

Order, table-account and settlement engine for a restaurant ordering
platform: diners order from a table QR code or an account, staff move
orders through the kitchen, and each table's orders are closed into a
single bill that is paid exactly once.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
