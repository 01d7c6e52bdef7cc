"""
Validação e sanitização do número discado.

Classifica a entrada em risk_level low/medium/high:
- high: entrada vazia, padrões bloqueados (markup, protocolos de script)
  ou caracteres de controle
- medium: comprimento excessivo, formato fora do permitido, poucos dígitos
- low: número aceitável

A mensagem de rejeição exibida ao usuário nunca ecoa a entrada crua.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import ValidationSettings

logger = logging.getLogger(__name__)


RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"

_RISK_ORDER = {RISK_LOW: 0, RISK_MEDIUM: 1, RISK_HIGH: 2}

ALLOWED_PATTERNS = (
    re.compile(r"^\+?[\d\s\-()]+$"),   # Internacional
    re.compile(r"^[\d\s\-()]+$"),      # Local
)

BLOCKED_PATTERNS = (
    re.compile(r"<\s*/?\s*(script|iframe|object|embed|form|input|textarea|select|"
               r"button|link|meta|style|title|head|body|html)\b", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"data:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"[<>]"),
)

# Não imprimíveis, NUL e DEL
CONTROL_CHARS = re.compile(r"[^\x20-\x7E]")

_TAGS = re.compile(r"<[^>]*>")
_STRIP = re.compile(r"[^\d+]")


@dataclass
class ValidationResult:
    """Resultado da validação do número discado."""
    is_valid: bool
    risk_level: str
    sanitized_value: str
    errors: List[str] = field(default_factory=list)

    @property
    def is_high_risk(self) -> bool:
        return self.risk_level == RISK_HIGH


def sanitize_input(value: str) -> str:
    """
    Reduz a entrada ao que pode ser discado.

    Remove tags e qualquer caractere que não seja dígito; o "+" só
    sobrevive como primeiro caractere.
    """
    if not value:
        return ""
    cleaned = _STRIP.sub("", _TAGS.sub("", value))
    if not cleaned:
        return ""
    return cleaned[0] + cleaned[1:].replace("+", "")


def validate_phone_number(
    value: Optional[str],
    settings: ValidationSettings
) -> ValidationResult:
    """Valida e sanitiza o número discado."""
    if value is None or not isinstance(value, str) or not value.strip():
        return ValidationResult(
            is_valid=False,
            risk_level=RISK_HIGH,
            sanitized_value="",
            errors=["Phone number is required"],
        )

    errors: List[str] = []
    risk = RISK_LOW

    def raise_risk(level: str) -> None:
        nonlocal risk
        if _RISK_ORDER[level] > _RISK_ORDER[risk]:
            risk = level

    if any(p.search(value) for p in BLOCKED_PATTERNS):
        errors.append("Phone number contains invalid characters or patterns")
        raise_risk(RISK_HIGH)

    if CONTROL_CHARS.search(value):
        errors.append("Phone number contains suspicious patterns")
        raise_risk(RISK_HIGH)

    if len(value) > settings.max_phone_number_length:
        errors.append(
            f"Phone number too long (max {settings.max_phone_number_length} characters)"
        )
        raise_risk(RISK_MEDIUM)

    if not any(p.match(value) for p in ALLOWED_PATTERNS):
        errors.append("Phone number format is not valid")
        raise_risk(RISK_MEDIUM)

    sanitized = sanitize_input(value)
    digits = sum(1 for c in sanitized if c.isdigit())
    if digits < settings.min_digits:
        errors.append("Phone number is too short")
        raise_risk(RISK_MEDIUM)

    if risk == RISK_HIGH:
        logger.warning(
            "[ADMISSION] High risk phone number input rejected",
            extra={"input_length": len(value), "errors": errors}
        )

    return ValidationResult(
        is_valid=not errors,
        risk_level=risk,
        sanitized_value=sanitized,
        errors=errors,
    )
