from .artifacts import Artifact, ArtifactStore
from .manager import Deployment, DeploymentStatus, ReleaseManager, ReleaseResult, ReleaseState

__all__ = [
    "Artifact",
    "ArtifactStore",
    "Deployment",
    "DeploymentStatus",
    "ReleaseManager",
    "ReleaseResult",
    "ReleaseState",
]
