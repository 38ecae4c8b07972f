"""Liveness probing used to gate deployments."""
from .prober import HealthCheckResult, HealthProber, healthy_status

__all__ = ["HealthCheckResult", "HealthProber", "healthy_status"]
