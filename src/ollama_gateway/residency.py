"""
Single-slot model residency.

The engine host has room for one large model. ``ResidencyManager`` makes sure
the requested model is the only one loaded before generation starts. The
residency set is re-read from the engine on every call; nothing is cached.

Residency changes (evict + load) run under one lock per manager so two
requests for different models cannot interleave their evictions and loads.
A request whose model is already the only resident one never waits for the
lock.
"""

import threading
import time
from typing import List

from .clients.base import EngineClient, LoadedModel
from .exceptions import GatewayError, LoadTimeout, RequestTimeout
from .models.registry import ModelRegistry
from .service.logging import get_service_logger

log = get_service_logger(__name__)


def same_model(a: str, b: str) -> bool:
    """Compare model names, treating a missing tag as ``:latest``."""
    def normalize(name: str) -> str:
        return name if ":" in name else f"{name}:latest"
    return normalize(a) == normalize(b)


class ResidencyManager:

    def __init__(
        self,
        engine: EngineClient,
        registry: ModelRegistry,
        load_timeout: float = 60.0,
        list_timeout: float = 10.0,
        unload_timeout: float = 30.0,
    ):
        self.engine = engine
        self.registry = registry
        self.load_timeout = load_timeout
        self.list_timeout = list_timeout
        self.unload_timeout = unload_timeout
        self._lock = threading.Lock()

    def loaded_models(self) -> List[LoadedModel]:
        """Current residency set as reported by the engine."""
        return self.engine.list_loaded(self.list_timeout)

    def ensure_only(self, target: str) -> int:
        """Make ``target`` the only resident model.

        Args:
            target: Registry model id.

        Returns:
            Number of models successfully evicted.

        Raises:
            InvalidModel: target is not registered (no engine call is made).
            ServiceUnavailable: the engine is unreachable.
            LoadTimeout: the warm-up call exceeded ``load_timeout``.
        """
        self.registry.require(target)

        if self._is_settled(target, self.loaded_models()):
            return 0

        with self._lock:
            # Another request may have finished the same switch while we waited
            loaded = self.loaded_models()
            if self._is_settled(target, loaded):
                return 0
            evicted = self._evict(loaded, keep=target)
            self._load(target, evicted)
            return evicted

    def preload(self, target: str) -> None:
        """Force ``target`` resident without touching other models."""
        self.registry.require(target)
        with self._lock:
            self._load(target)

    def unload_all(self) -> int:
        """Evict every resident model; returns how many were evicted."""
        with self._lock:
            return self._evict(self.loaded_models(), keep=None)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _is_settled(self, target: str, loaded: List[LoadedModel]) -> bool:
        names = [m.name for m in loaded]
        log.residency_check(target, names)
        return len(names) == 1 and same_model(names[0], target)

    def _evict(self, loaded: List[LoadedModel], keep: str | None) -> int:
        evicted = 0
        for model in loaded:
            if keep is not None and same_model(model.name, keep):
                continue
            try:
                self.engine.unload(model.name, self.unload_timeout)
            except GatewayError as e:
                # Staying over-resident costs memory, not correctness
                log.model_evict_failed(model.name, e.detail)
                continue
            evicted += 1
            log.model_evicted(model.name)
        return evicted

    def _load(self, target: str, evicted: int = 0) -> None:
        log.model_loading(target)
        start = time.time()
        try:
            self.engine.warm(target, self.load_timeout)
        except RequestTimeout as e:
            log.model_error(target, f"load exceeded {self.load_timeout:.0f}s")
            raise LoadTimeout(
                f"Loading model {target} exceeded {self.load_timeout:.0f}s"
            ) from e
        except GatewayError as e:
            log.model_error(target, e.detail)
            raise
        log.model_loaded(target, (time.time() - start) * 1000, evicted)
