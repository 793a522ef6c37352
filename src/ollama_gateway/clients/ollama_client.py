import json
import logging
from typing import Any, Iterator, List

import requests
import urllib3

from ..exceptions import (
    GatewayError,
    InternalError,
    ModelNotFound,
    RequestTimeout,
    ServiceUnavailable,
)
from ..models.message import ConversationMessage
from .base import EngineClient, EngineStream, LoadedModel

# Get logger instance
logger = logging.getLogger(__name__)


class OllamaClient(EngineClient):
    """Talks to an Ollama server over its HTTP API.

    Residency is controlled through ``/api/ps`` (list), ``/api/generate`` with
    ``keep_alive: 0`` (evict) and a one-token ``/api/generate`` (load).
    """

    def list_loaded(self, timeout: float) -> List[LoadedModel]:
        try:
            response = requests.get(f"{self.base_url}/api/ps", timeout=timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise self._map_error(e) from e
        except ValueError as e:
            raise InternalError(f"Engine returned an unreadable model list: {e}") from e
        return [LoadedModel.from_api(m) for m in data.get("models") or []]

    def unload(self, model: str, timeout: float) -> None:
        payload = {"model": model, "prompt": "", "stream": False, "keep_alive": 0}
        self._post("/api/generate", payload, timeout, model=model).close()

    def warm(self, model: str, timeout: float) -> None:
        payload = {
            "model": model,
            "prompt": ".",
            "stream": False,
            "keep_alive": self.keep_alive,
            "options": {"num_predict": 1},
        }
        self._post("/api/generate", payload, timeout, model=model).close()

    def chat(self, model: str, messages: List[ConversationMessage], options: dict[str, Any], timeout: float) -> dict:
        payload = self._chat_payload(model, messages, options, stream=False)
        return self._json(self._post("/api/chat", payload, timeout, model=model))

    def stream_chat(self, model: str, messages: List[ConversationMessage], options: dict[str, Any], timeout: float) -> EngineStream:
        payload = self._chat_payload(model, messages, options, stream=True)
        return OllamaStream(self._post("/api/chat", payload, timeout, model=model, stream=True), self)

    def generate(self, model: str, prompt: str, images: List[str], options: dict[str, Any], timeout: float) -> dict:
        payload = self._generate_payload(model, prompt, images, options, stream=False)
        return self._json(self._post("/api/generate", payload, timeout, model=model))

    def stream_generate(self, model: str, prompt: str, images: List[str], options: dict[str, Any], timeout: float) -> EngineStream:
        payload = self._generate_payload(model, prompt, images, options, stream=True)
        return OllamaStream(self._post("/api/generate", payload, timeout, model=model, stream=True), self)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _chat_payload(self, model: str, messages: List[ConversationMessage], options: dict[str, Any], stream: bool) -> dict:
        return {
            "model": model,
            "messages": [m.to_api_format() for m in messages],
            "stream": stream,
            "keep_alive": self.keep_alive,
            "options": options,
        }

    def _generate_payload(self, model: str, prompt: str, images: List[str], options: dict[str, Any], stream: bool) -> dict:
        payload = {
            "model": model,
            "prompt": prompt,
            "stream": stream,
            "keep_alive": self.keep_alive,
            "options": options,
        }
        if images:
            payload["images"] = list(images)
        return payload

    def _post(self, path: str, payload: dict, timeout: float, model: str | None = None, stream: bool = False) -> requests.Response:
        if logger.isEnabledFor(logging.DEBUG):
            # Image payloads can be megabytes of base64, log the shape only
            logger.debug(
                f"Ollama POST {path} model={payload.get('model')} stream={stream} "
                f"options={json.dumps(payload.get('options', {}))}"
            )
        try:
            response = requests.post(
                f"{self.base_url}{path}",
                json=payload,
                stream=stream,
                timeout=timeout,
            )
            response.raise_for_status()
            return response
        except requests.exceptions.RequestException as e:
            raise self._map_error(e, model) from e

    @staticmethod
    def _json(response: requests.Response) -> dict:
        try:
            return response.json()
        except ValueError as e:
            raise InternalError(f"Engine returned invalid JSON: {e}") from e
        finally:
            response.close()

    def _map_error(self, error: requests.exceptions.RequestException, model: str | None = None) -> GatewayError:
        """Classify a transport failure into the gateway taxonomy."""
        if _is_read_timeout(error):
            return RequestTimeout("Request timeout. The model may be taking too long to respond.")
        # ConnectTimeout is both a ConnectionError and a Timeout: treat it as unreachable
        if isinstance(error, requests.exceptions.ConnectionError):
            return ServiceUnavailable(
                f"Could not connect to Ollama server at {self.base_url}. Ensure it is running."
            )
        if isinstance(error, requests.exceptions.Timeout):
            return RequestTimeout("Request timeout. The model may be taking too long to respond.")
        if isinstance(error, requests.exceptions.HTTPError):
            status = error.response.status_code if error.response is not None else None
            if status == 404:
                return ModelNotFound(model or "unknown")
            return InternalError(f"Ollama returned HTTP {status}: {_error_text(error.response)}")
        return InternalError(str(error))


def _is_read_timeout(error: BaseException) -> bool:
    """True for a read that stalled mid-response.

    requests re-raises urllib3's ``ReadTimeoutError`` from ``iter_content`` as a
    ``ConnectionError``, so the timeout is only visible in its args or cause.
    """
    if isinstance(error, requests.exceptions.ReadTimeout):
        return True
    wrapped = [*error.args, error.__cause__, error.__context__]
    return any(isinstance(e, urllib3.exceptions.ReadTimeoutError) for e in wrapped)


class OllamaStream:
    """Open NDJSON response whose read failures surface as gateway errors."""

    def __init__(self, response: requests.Response, client: OllamaClient):
        self._response = response
        self._client = client

    def iter_lines(self) -> Iterator[bytes]:
        try:
            yield from self._response.iter_lines()
        except requests.exceptions.RequestException as e:
            raise self._client._map_error(e) from e

    def close(self) -> None:
        self._response.close()


def _error_text(response: requests.Response | None) -> str:
    """Best-effort extraction of Ollama's ``{"error": ...}`` body."""
    if response is None:
        return ""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and "error" in body:
        return str(body["error"])
    return response.text[:200]
