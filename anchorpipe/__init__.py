"""
Anchorpipe - CI-native flaky test management platform

Authentication, repository scoped RBAC, data subject request workflows, audit
logging with SIEM forwarding, and HMAC authenticated test report ingestion
backed by a Kafka ingestion worker.
"""

__version__ = "0.1.0"
__author__ = "Anchorpipe Team"
__email__ = "team@anchorpipe.dev"
__description__ = "CI-native flaky test management platform"

# Core imports
from .core.config import AnchorpipeConfig
from .core.logging import setup_logging

# Initialize logging
setup_logging()

__all__ = [
    "__version__",
    "__author__",
    "__email__",
    "__description__",
    "AnchorpipeConfig",
    "setup_logging",
]
