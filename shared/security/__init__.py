from .api_key import internal_headers, verify_api_key
from .dependencies import verify_internal_api_key

__all__ = [
    "internal_headers",
    "verify_api_key",
    "verify_internal_api_key",
]
