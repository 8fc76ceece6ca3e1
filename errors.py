"""
Error taxonomy for the signal → fill pipeline.

Only ``StateError`` indicates a caller bug; everything else describes a market
or input condition and ends up encoded in a structured result object.
"""
from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class SignalValidationError(PipelineError):
    """Malformed signal. Rejected before dispatch, never retried."""


class RiskRejection(PipelineError):
    """A trade the risk evaluator refuses. The caller simply does not trade."""

    def __init__(self, reason: str, risk_reward_ratio: Optional[float] = None):
        super().__init__(reason)
        self.reason = reason
        self.risk_reward_ratio = risk_reward_ratio


class ExecutionError(PipelineError):
    """Exchange-client failure. Retried up to the configured bound."""


class StateError(PipelineError):
    """Inconsistent inputs such as a stop-loss equal to the entry price."""
