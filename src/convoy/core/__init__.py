"""Core orchestration logic for convoy.

- pool: bounded concurrency for fleet fan-outs
- lock_manager: deployment lock replicated across hosts
- audit_trail: per-host audit files, parsing and merging
- plan: services x hosts selection for a deployment
- version: image tag resolution
- pipeline: multi-stage deployment
"""

from .audit_trail import AuditFollower, AuditTrail
from .lock_manager import DeploymentLock
from .pipeline import DeploymentPipeline, DeployOptions, PipelineOutcome, PipelineResult
from .plan import DeploymentPlan, build_plan
from .pool import ConcurrencyPool, Semaphore
from .version import resolve_version_tag

__all__ = [
    "AuditFollower",
    "AuditTrail",
    "ConcurrencyPool",
    "DeployOptions",
    "DeploymentLock",
    "DeploymentPipeline",
    "DeploymentPlan",
    "PipelineOutcome",
    "PipelineResult",
    "Semaphore",
    "build_plan",
    "resolve_version_tag",
]
