"""Environment routing and credential exchange for the static-site accounts.

Each environment (dev, staging, prod) lives in its own AWS account with one
deployment role trusted only by this repository's GitHub Actions OIDC tokens.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
