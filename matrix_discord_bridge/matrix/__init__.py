
from .client import MatrixBridgeClient

__all__ = ["MatrixBridgeClient"]
