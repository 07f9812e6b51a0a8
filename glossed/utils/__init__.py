"""Shared utilities for the booking backend."""

from glossed.utils.auth import token_required, decode_user_id
from glossed.utils.responses import error_response

__all__ = [
    'token_required',
    'decode_user_id',
    'error_response',
]
