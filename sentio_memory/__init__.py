"""
Sentio Memory package initialization.

Per-user memory corpus storage for an email assistant, with OpenSearch and
file snapshot backends.
"""

__version__ = '0.1.0'

# Setup logging configuration on package import
from .utils.logging_config import setup_logging  # noqa: E402

setup_logging()
