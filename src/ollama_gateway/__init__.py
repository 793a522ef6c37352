# Re-export the pieces most callers need
from .clients.ollama_client import OllamaClient
from .complexity import ComplexityClass, analyze_complexity
from .parameters import select_parameters
from .residency import ResidencyManager
