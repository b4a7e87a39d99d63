from deploy_audit.verification.classifier import FourEyesClassifier
from deploy_audit.verification.correlator import PullRequestCorrelator
from deploy_audit.verification.graph import CommitGraphWalker
from deploy_audit.verification.verifier import DeploymentVerifier, VerificationResult

__all__ = [
    "CommitGraphWalker",
    "DeploymentVerifier",
    "FourEyesClassifier",
    "PullRequestCorrelator",
    "VerificationResult",
]
