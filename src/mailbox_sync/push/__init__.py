"""Push notification decoding."""

from .decoder import decode_push, decode_verified_push, sign_push_body, verify_push_signature

__all__ = ["decode_push", "decode_verified_push", "sign_push_body", "verify_push_signature"]
