from .base import EngineClient, EngineStream, LoadedModel
from .ollama_client import OllamaClient

__all__ = ['EngineClient', 'EngineStream', 'LoadedModel', 'OllamaClient']
