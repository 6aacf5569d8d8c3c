"""
Deployment ladder module.

Handles:
- Per-agent deployment states (shadow, reduced-live, live, disabled)
- Objective unlock and demotion checks
- Execution permissions and size multipliers
"""

from src.deployment.evidence import build_deployment_metrics
from src.deployment.ladder import (
    DeploymentLadder,
    DeploymentSnapshot,
    ExecutionPermission,
    UnlockCheck,
)
from src.deployment.records import (
    REDUCED_SIZE_MULTIPLIER,
    DeploymentMetrics,
    DeploymentRecord,
    DeploymentState,
    Transition,
)

__all__ = [
    "build_deployment_metrics",
    "DeploymentLadder",
    "DeploymentSnapshot",
    "ExecutionPermission",
    "UnlockCheck",
    "REDUCED_SIZE_MULTIPLIER",
    "DeploymentMetrics",
    "DeploymentRecord",
    "DeploymentState",
    "Transition",
]
