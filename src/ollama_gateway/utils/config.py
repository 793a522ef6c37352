import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console

logger = logging.getLogger(__name__)
console = Console(stderr=True)


def get_default_models_yaml_path() -> Path:
    env_path = os.environ.get("OLLAMA_GATEWAY_MODELS_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(xdg_config_home) / "ollama-gateway" / "models.yaml"

DEFAULT_MODELS_YAML = get_default_models_yaml_path()
DOTENV_PATH = DEFAULT_MODELS_YAML.parent / ".env"

class Config(BaseSettings):
    OLLAMA_URL: str = Field(default="http://localhost:11434", description="Base URL of the Ollama engine")
    SERVICE_HOST: str = Field(default="0.0.0.0")
    SERVICE_PORT: int = Field(default=3001)
    MODELS_CONFIG_PATH: str = Field(default=str(DEFAULT_MODELS_YAML), description="Path to the models YAML registry file")
    DEFAULT_MODEL: Optional[str] = Field(default=None, description="Model warmed at startup when WARMUP_ON_STARTUP is set")
    WARMUP_ON_STARTUP: bool = Field(default=False)

    # --- Engine call settings --- #
    KEEP_ALIVE: str = Field(default="60m", description="keep_alive sent with every chat/generate call")
    LOAD_TIMEOUT: float = Field(default=60.0, description="Seconds allowed for the warm-up call that forces residency")
    LIST_TIMEOUT: float = Field(default=10.0, description="Seconds allowed for listing loaded models")
    UNLOAD_TIMEOUT: float = Field(default=30.0, description="Seconds allowed for each eviction call")
    NUM_THREAD: int = Field(default=10)
    USE_MLOCK: bool = Field(default=True)
    USE_MMAP: bool = Field(default=False)
    LOW_VRAM: bool = Field(default=False)

    # --- Streaming / HTTP settings --- #
    DEFAULT_CHUNK_SIZE: int = Field(default=500, gt=0, description="Progressive chunk size when the request omits one")
    STREAM_QUEUE_SIZE: int = Field(default=64, gt=0, description="Bound of the engine-to-client stream channel")
    MAX_BODY_BYTES: int = Field(default=50 * 1024 * 1024, description="Request body cap, sized for base64 images")
    MAX_WORKERS: int = Field(default=8, description="Threads available for blocking engine calls")
    MAX_STREAMS: int = Field(default=32, gt=0, description="Concurrent streaming responses (one relay thread each)")
    CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    VERBOSE: bool = Field(default=False, description="Verbose mode for debugging")

    defined_models: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    model_config = SettingsConfigDict(
        env_prefix="OLLAMA_GATEWAY_",
        env_file=DOTENV_PATH,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra='ignore'
    )

    def __init__(self, **values: Any):
        if 'MODELS_CONFIG_PATH' in values:
            values['MODELS_CONFIG_PATH'] = str(Path(values['MODELS_CONFIG_PATH']).expanduser().resolve())

        super().__init__(**values)
        self._load_models_config()

    def _load_models_config(self):
        config_path = Path(self.MODELS_CONFIG_PATH)
        if not config_path.is_file():
            logger.debug(f"Models file not found at {config_path}, using built-in registry")
            self.defined_models = {"models": {}}
            return

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                loaded_data = yaml.safe_load(f)
                if loaded_data is None:
                    loaded_data = {}
            if not isinstance(loaded_data, dict) or not isinstance(loaded_data.get("models"), dict):
                console.print(f"[bold red]Warning:[/bold red] Invalid format in {config_path}. Missing or invalid top-level 'models' dictionary. Using built-in registry.")
                self.defined_models = {"models": {}}
            else:
                self.defined_models = {"models": loaded_data["models"]}

        except yaml.YAMLError as e:
            console.print(f"[bold red]Error parsing YAML file {config_path}:[/bold red] {e}")
            self.defined_models = {"models": {}}
        except OSError as e:
            console.print(f"[bold red]Error loading models config {config_path}:[/bold red] {e}")
            self.defined_models = {"models": {}}

    def engine_options(self) -> Dict[str, Any]:
        """Host tuning options merged into every generation profile."""
        return {
            "num_thread": self.NUM_THREAD,
            "use_mlock": self.USE_MLOCK,
            "use_mmap": self.USE_MMAP,
            "low_vram": self.LOW_VRAM,
        }
