"""
Commerce Ledger 核心包
购物车结算、钱包账本、优惠券与退款
"""

__version__ = "1.0.0"
