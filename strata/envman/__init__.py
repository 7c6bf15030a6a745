from .redact import redact_string as redact_secrets
from .secrets import PLACEHOLDER, provision, verify

__all__ = ["PLACEHOLDER", "provision", "verify", "redact_secrets"]
