"""
paygate - payment authorization backend for the listing marketplace.

Paid actions (publishing a listing, buying a data-access subscription) are
unlocked by a USDC payment verified on-chain, or by a usage-limited promo code.
"""

__version__ = "0.1.0"
