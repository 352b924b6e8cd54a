"""Payment status check service.

Resolves each payment to its gateway, groups payments per gateway into
chunks and drives batch notifications plus per-payment status triggers,
reporting every requested payment exactly once.
"""

__all__: list[str] = []
