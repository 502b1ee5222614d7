from .base import BackendInfo, InferenceEngine
from .factory import RuntimeKind, create_engine, get_available_engines, register_engine
from .pool import InterpreterPool

__all__ = [
    "BackendInfo",
    "InferenceEngine",
    "InterpreterPool",
    "RuntimeKind",
    "create_engine",
    "get_available_engines",
    "register_engine",
]
