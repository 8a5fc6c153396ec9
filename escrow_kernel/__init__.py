"""
Escrow Kernel

Payment lifecycle and dispute resolution for tailoring orders:
- Exact-sum escrow split across deposit, fitting and final tranches
- Optimistic compare-and-swap stage transitions
- Customer and time-based milestone approval
- Admin dispute resolution with refunds
"""

__version__ = "0.1.0"
