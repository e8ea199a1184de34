"""
Utils Package

Provides utility modules for:
- identifiers: Correlation id generation and hex encoding
- validation_errors: Structured 400 responses for invalid payloads
"""

from .identifiers import (
    new_correlation_id,
    is_correlation_id,
    correlation_id_to_bytes,
    to_hex,
)

__all__ = [
    'new_correlation_id',
    'is_correlation_id',
    'correlation_id_to_bytes',
    'to_hex',
]
