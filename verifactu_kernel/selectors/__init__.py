"""Read-only selectors."""

from verifactu_kernel.selectors.chain_selector import ChainSelector, record_view

__all__ = ["ChainSelector", "record_view"]
