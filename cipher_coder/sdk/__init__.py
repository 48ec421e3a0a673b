"""
SDK for Cipher Coder.

Provides the remote transport and local model backends. The service facade
lives in :mod:`cipher_coder.sdk.service`.
"""

from .local_model import LocalModelBackend, ModelMetadata, StubLocalModel, load_model_metadata
from .openai_client import OpenAITransport

__all__ = [
    "LocalModelBackend",
    "ModelMetadata",
    "OpenAITransport",
    "StubLocalModel",
    "load_model_metadata",
]
