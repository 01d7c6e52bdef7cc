# Call Flow Controller
# Reconcilia os eventos do transporte de telefonia em um único estado
# canônico de chamada para a UI, com admissão (validação, rate limit) e
# classificação de desfechos (voicemail, erros).

# Lazy imports: "from callflow import CallController" não carrega o
# núcleo inteiro até ser usado.

__all__ = [
    "CallController",
    "TelephonyTransport",
    "ControllerConfig",
    "CallEventType",
]


def __getattr__(name: str):
    """Lazy import dos pontos de entrada públicos."""
    if name == "CallController":
        from .controller import CallController
        return CallController
    elif name == "TelephonyTransport":
        from .controller import TelephonyTransport
        return TelephonyTransport
    elif name == "ControllerConfig":
        from .config import ControllerConfig
        return ControllerConfig
    elif name == "CallEventType":
        from .core.events import CallEventType
        return CallEventType
    raise AttributeError(f"module 'callflow' has no attribute {name!r}")
