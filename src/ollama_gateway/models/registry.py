"""Static model registry.

The registry is read once at startup and never changes afterwards. Components
that need it receive the instance explicitly instead of importing a global.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from ..exceptions import InvalidModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelDescriptor:
    """A model the gateway is allowed to route to."""
    id: str
    display_name: str
    description: str = ""
    supports_images: bool = False

    def to_api_format(self) -> dict:
        return {
            "id": self.id,
            "name": self.display_name,
            "description": self.description,
            "supportsImages": self.supports_images,
        }


DEFAULT_MODELS = (
    ModelDescriptor(
        id="llama3.2-vision:11b",
        display_name="Llama 3.2 Vision 11B",
        description="Advanced vision and text understanding",
        supports_images=True,
    ),
)


class ModelRegistry:
    """Read-only lookup of the models defined for this deployment."""

    def __init__(self, models: List[ModelDescriptor] | tuple = DEFAULT_MODELS):
        self._models: Dict[str, ModelDescriptor] = {}
        for model in models:
            if model.id in self._models:
                logger.warning(f"Duplicate model id '{model.id}' in registry, keeping the first definition")
                continue
            self._models[model.id] = model

    @classmethod
    def from_config(cls, config: Any) -> "ModelRegistry":
        """Build the registry from ``config.defined_models``.

        Falls back to the built-in registry when the models file defines
        nothing usable.
        """
        defined = (getattr(config, "defined_models", None) or {}).get("models", {})
        models = []
        for model_id, info in defined.items():
            if not isinstance(info, dict):
                logger.warning(f"Skipping model '{model_id}': definition must be a mapping")
                continue
            models.append(ModelDescriptor(
                id=str(model_id),
                display_name=info.get("name") or str(model_id),
                description=info.get("description", ""),
                supports_images=bool(info.get("supports_images", False)),
            ))
        if not models:
            logger.debug("No models defined in config, using built-in registry")
            return cls()
        return cls(models)

    def get(self, model_id: Optional[str]) -> Optional[ModelDescriptor]:
        if not model_id:
            return None
        return self._models.get(model_id)

    def require(self, model_id: Optional[str]) -> ModelDescriptor:
        """Return the descriptor or raise ``InvalidModel``."""
        descriptor = self.get(model_id)
        if descriptor is None:
            raise InvalidModel(model_id, self.ids())
        return descriptor

    def ids(self) -> List[str]:
        return list(self._models.keys())

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._models.values())

    def __len__(self) -> int:
        return len(self._models)
