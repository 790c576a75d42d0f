"""
Service layer for the mileage rewards backend.

This package contains the odometer upload pipeline and the reward
distribution and confirmation sweeps, plus the provider clients they use.
"""

from .distribution import sweep_pending
from .reconciliation import sweep_sent
from .rewards import compute_upload_reward_amount

__all__ = ["sweep_pending", "sweep_sent", "compute_upload_reward_amount"]
