"""
FreshBox 订单结算与周配送引擎
"""

__version__ = "1.0.0"
