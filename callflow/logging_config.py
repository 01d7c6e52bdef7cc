"""
Structured Logging Configuration.

Features:
- Logging estruturado com structlog
- Contexto por sessão de chamada (contextvars)
- Log rotation
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.types import Processor

SERVICE_NAME = "callflow"
SERVICE_VERSION = "1.0.0"


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Adiciona timestamp ISO."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def add_service_info(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = SERVICE_VERSION
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    json_format: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> None:
    """
    Configura logging estruturado.

    Args:
        log_level: Nível de log (DEBUG, INFO, WARNING, ERROR)
        log_dir: Diretório de logs (None = stdout apenas)
        json_format: Usar formato JSON (True para produção)
        max_bytes: Tamanho máximo do arquivo de log
        backup_count: Número de backups a manter
    """
    level = getattr(logging, log_level.upper())

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        add_timestamp,
        add_service_info,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Logging padrão (módulos do núcleo usam logging.getLogger)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if json_format:
        formatter = logging.Formatter(
            '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path / f"{SERVICE_NAME}.log",
            maxBytes=max_bytes,
            backupCount=backup_count
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """
    Obtém logger com contexto.

    Uso:
        logger = get_logger(__name__)
        logger.info("message", key="value")
    """
    return structlog.get_logger(name)


def mask_number(number: Optional[str]) -> Optional[str]:
    """Mantém só os 4 últimos dígitos do número nos logs."""
    if not number:
        return number
    if len(number) <= 4:
        return "*" * len(number)
    return "*" * (len(number) - 4) + number[-4:]


class CallLogContext:
    """
    Contexto de log de uma sessão de chamada.

    O CallController abre o contexto ao criar a sessão e fecha ao limpá-la.
    Também funciona como context manager:

        with CallLogContext(call_id, dialed_number) as log:
            log.info("Dialing")
    """

    def __init__(self, call_id: str, dialed_number: Optional[str] = None):
        self.call_id = call_id
        self.dialed_number = dialed_number
        self._logger = structlog.get_logger("callflow.session")
        self._start_time = datetime.now()
        self._open = False

    def open(self) -> 'CallLogContext':
        structlog.contextvars.bind_contextvars(
            call_id=self.call_id,
            dialed_number=mask_number(self.dialed_number),
        )
        self._open = True
        self.info("Session context initialized")
        return self

    def close(self, status: Optional[str] = None) -> None:
        if not self._open:
            return
        duration = (datetime.now() - self._start_time).total_seconds()
        self.info("Session context ended", duration_seconds=duration, status=status)
        structlog.contextvars.unbind_contextvars("call_id", "dialed_number")
        self._open = False

    def __enter__(self) -> 'CallLogContext':
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def debug(self, message: str, **kwargs):
        self._logger.debug(message, **kwargs)

    def info(self, message: str, **kwargs):
        self._logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        self._logger.error(message, **kwargs)

    def log_transition(self, previous_state: str, new_state: str, **kwargs):
        self._logger.info(
            f"Call state {previous_state} -> {new_state}",
            previous_state=previous_state,
            new_state=new_state,
            **kwargs
        )

    def log_failure(
        self,
        kind: str,
        user_facing: bool,
        detail: Optional[str] = None
    ):
        """Log de falha classificada."""
        self._logger.warning(
            "Call failed",
            kind=kind,
            user_facing=user_facing,
            detail=detail,
        )
