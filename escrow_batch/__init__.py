"""
escrow_batch -- Time-based milestone auto-approval.

One bounded batch per external trigger: find PENDING milestones whose review
window has lapsed and approve each one exactly once, in its own transaction.

Architecture:
    escrow_batch/ is a top-level package.  Nothing in escrow_kernel/ imports
    from escrow_batch.

Invariants:
    - Per-item isolation: one session and transaction per milestone
    - Clock injection (no datetime.now() calls)
    - A committed auto-approval is never reverted by a payment failure
    - Graceful shutdown between items
"""
