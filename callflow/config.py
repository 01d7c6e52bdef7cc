"""
Configuração do controlador de chamadas.

Todos os limites do núcleo (rate limit, thresholds do watchdog, padrões
de header de voicemail) entram por aqui. As classes do núcleo recebem
estes objetos prontos e não carregam valores padrão próprios.

Variáveis de ambiente (todas opcionais):
- CALLFLOW_RATE_LIMIT_MAX_REQUESTS / CALLFLOW_RATE_LIMIT_WINDOW_SECONDS
- CALLFLOW_WATCHDOG_DIALING_SECONDS / CALLFLOW_WATCHDOG_RINGING_SECONDS
- CALLFLOW_WATCHDOG_TRYING_SECONDS
- CALLFLOW_VOICEMAIL_HEADER_PATTERNS (separados por vírgula)
- CALLFLOW_SOFT_RESET_DELAY_SECONDS
- CALLFLOW_AUTO_RESET (true/false)
"""

import logging
import os
import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# Únicos estados com aresta "-> failed" na tabela de transições
WATCHABLE_STATES = ("dialing", "ringing")


class RateLimitSettings(BaseModel):
    """Janela deslizante de tentativas de chamada por identidade."""

    max_requests: int = 5
    window_seconds: float = 60.0

    @field_validator("max_requests")
    @classmethod
    def validate_max_requests(cls, v):
        if v < 1:
            raise ValueError(f"max_requests must be >= 1, got {v}")
        return v

    @field_validator("window_seconds")
    @classmethod
    def validate_window(cls, v):
        if v <= 0:
            raise ValueError(f"window_seconds must be > 0, got {v}")
        return v

    model_config = {"extra": "ignore"}


class WatchdogSettings(BaseModel):
    """
    Thresholds (segundos) do FailureWatchdog.

    state_thresholds: por estado canônico vigiado (dialing, ringing)
    raw_state_thresholds: por estado cru reportado enquanto discando;
        só encurtam o prazo corrente, nunca estendem
    """

    state_thresholds: Dict[str, float] = Field(
        default_factory=lambda: {"dialing": 30.0, "ringing": 60.0}
    )
    raw_state_thresholds: Dict[str, float] = Field(
        default_factory=lambda: {"trying": 15.0}
    )

    @field_validator("state_thresholds")
    @classmethod
    def validate_states(cls, v):
        for state, seconds in v.items():
            if state not in WATCHABLE_STATES:
                raise ValueError(
                    f"Invalid watched state: {state} (allowed: {', '.join(WATCHABLE_STATES)})"
                )
            if seconds <= 0:
                raise ValueError(f"Threshold for {state} must be > 0, got {seconds}")
        return v

    @field_validator("raw_state_thresholds")
    @classmethod
    def validate_raw_states(cls, v):
        normalized = {}
        for raw_state, seconds in v.items():
            if seconds <= 0:
                raise ValueError(f"Threshold for raw state {raw_state} must be > 0, got {seconds}")
            normalized[raw_state.strip().lower()] = seconds
        return normalized

    model_config = {"extra": "ignore"}


class VoicemailSettings(BaseModel):
    """Padrões (regex, case-insensitive) aplicados às chaves de header."""

    header_patterns: List[str] = Field(default_factory=lambda: [r"voice[-_ ]?mail"])

    @field_validator("header_patterns")
    @classmethod
    def validate_patterns(cls, v):
        for pattern in v:
            try:
                re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                raise ValueError(f"Invalid voicemail header pattern {pattern!r}: {e}")
        return v

    model_config = {"extra": "ignore"}


class ValidationSettings(BaseModel):
    """Limites de validação do número discado."""

    max_phone_number_length: int = 20
    min_digits: int = 7

    model_config = {"extra": "ignore"}


class ControllerConfig(BaseModel):
    """Configuração completa injetada no CallController."""

    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    watchdog: WatchdogSettings = Field(default_factory=WatchdogSettings)
    voicemail: VoicemailSettings = Field(default_factory=VoicemailSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)

    # Falhas não exibidas ao usuário voltam a idle após este atraso
    soft_reset_delay: float = 1.5

    # Estados terminais voltam a idle imediatamente após emitir o registro
    auto_reset: bool = True

    @field_validator("soft_reset_delay")
    @classmethod
    def validate_soft_reset_delay(cls, v):
        if v < 0:
            raise ValueError(f"soft_reset_delay must be >= 0, got {v}")
        return v

    model_config = {"extra": "ignore"}

    @classmethod
    def from_env(cls, prefix: str = "CALLFLOW_") -> "ControllerConfig":
        """Monta a configuração a partir de variáveis de ambiente."""
        config = cls()

        max_requests = _env(prefix, "RATE_LIMIT_MAX_REQUESTS")
        window = _env(prefix, "RATE_LIMIT_WINDOW_SECONDS")
        if max_requests or window:
            config.rate_limit = RateLimitSettings(
                max_requests=int(max_requests or config.rate_limit.max_requests),
                window_seconds=float(window or config.rate_limit.window_seconds),
            )

        state_thresholds = dict(config.watchdog.state_thresholds)
        raw_thresholds = dict(config.watchdog.raw_state_thresholds)
        dialing = _env(prefix, "WATCHDOG_DIALING_SECONDS")
        ringing = _env(prefix, "WATCHDOG_RINGING_SECONDS")
        trying = _env(prefix, "WATCHDOG_TRYING_SECONDS")
        if dialing:
            state_thresholds["dialing"] = float(dialing)
        if ringing:
            state_thresholds["ringing"] = float(ringing)
        if trying:
            raw_thresholds["trying"] = float(trying)
        config.watchdog = WatchdogSettings(
            state_thresholds=state_thresholds,
            raw_state_thresholds=raw_thresholds,
        )

        patterns = _env(prefix, "VOICEMAIL_HEADER_PATTERNS")
        if patterns:
            config.voicemail = VoicemailSettings(
                header_patterns=[p.strip() for p in patterns.split(",") if p.strip()]
            )

        soft_reset = _env(prefix, "SOFT_RESET_DELAY_SECONDS")
        if soft_reset:
            config.soft_reset_delay = float(soft_reset)

        auto_reset = _env(prefix, "AUTO_RESET")
        if auto_reset:
            config.auto_reset = auto_reset.strip().lower() in ("1", "true", "yes", "on")

        logger.info(
            "Controller config loaded from environment",
            extra={
                "rate_limit_max": config.rate_limit.max_requests,
                "rate_limit_window": config.rate_limit.window_seconds,
                "watchdog_states": config.watchdog.state_thresholds,
            }
        )
        return config


def _env(prefix: str, name: str) -> Optional[str]:
    value = os.getenv(f"{prefix}{name}")
    return value if value not in (None, "") else None
