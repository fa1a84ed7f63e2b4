"""
Reconciliation core for the Oracle database operator.

This package holds the backend-agnostic parts of a reconcile pass:
- Precondition table gating every mutating remote call
- Drift detection producing at most one corrective action
- Retry and backoff policies evaluated across passes
- Deletion policy (hard vs soft link)
- The reconciler tying them together
"""

# Import lazily to avoid circular dependencies at module load time
# Users should import directly from submodules:
# from oradb_operator.core.state_machine import LifecycleStateMachine
# from oradb_operator.core.drift import DriftDetector, drift_detector
# from oradb_operator.core.reconciler import Reconciler

__all__ = [
    "DeletionPolicy",
    "DriftDetector",
    "LifecycleStateMachine",
    "Reconciler",
    "ReconcilerConfig",
    "RetryPolicy",
]
