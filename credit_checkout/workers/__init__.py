"""Background workers."""
from .order_expiry_worker import run_expiry_pass, start_order_expiry_worker

__all__ = ["run_expiry_pass", "start_order_expiry_worker"]
