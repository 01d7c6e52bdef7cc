"""
Utilitários do controlador: validação de número, rate limiting e métricas.
"""

from .phone_validation import ValidationResult, validate_phone_number, sanitize_input
from .rate_limiter import SlidingWindowRateLimiter, RateLimitInfo, RateLimitWindow
from .metrics import CallFlowMetrics

__all__ = [
    'ValidationResult',
    'validate_phone_number',
    'sanitize_input',
    'SlidingWindowRateLimiter',
    'RateLimitInfo',
    'RateLimitWindow',
    'CallFlowMetrics',
]
