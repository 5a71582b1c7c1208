"""
Provisioner — idempotent, dependency-ordered host provisioning.
"""

__version__ = "0.1.0"
