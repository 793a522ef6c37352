"""
FastAPI service for the Ollama gateway.

Provides:
- Chat, generate, resume and progressive endpoints backed by the router
- Model residency endpoints (list loaded, preload, unload, switch)
- Health endpoint

Run with: ollama-gateway
Or: uvicorn ollama_gateway.service.api:app --host 0.0.0.0 --port 3001
"""

import asyncio
import concurrent.futures
import functools
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from ..clients.base import EngineClient
from ..clients.ollama_client import OllamaClient
from ..exceptions import GatewayError, InternalError, InvalidRequest
from ..models.registry import ModelRegistry
from ..parameters import DEFAULT_PARAMETER_TABLE
from ..residency import ResidencyManager
from ..router import ChatResult, RequestRouter, StreamHandle
from ..utils.config import Config
from .logging import (
    RequestContext,
    generate_request_id,
    get_service_logger,
    set_request_id,
    setup_service_logging,
)
from .middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from .models import (
    SERVICE_VERSION,
    ChatRequest,
    ChatResponse,
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    LoadedModelsResponse,
    MessageResponse,
    ModelRequest,
    ModelsResponse,
    ProgressiveRequest,
    ResumeRequest,
    ResumeResponse,
    SwitchResponse,
    UnloadResponse,
)

log = get_service_logger(__name__)


class GatewayService:
    """Owns the engine client, residency manager, router and worker pools."""

    def __init__(
        self,
        config: Config,
        engine: EngineClient | None = None,
        registry: ModelRegistry | None = None,
    ):
        self.config = config
        self.registry = registry or ModelRegistry.from_config(config)
        self.engine = engine or OllamaClient(config.OLLAMA_URL, keep_alive=config.KEEP_ALIVE)
        self.residency = ResidencyManager(
            self.engine,
            self.registry,
            load_timeout=config.LOAD_TIMEOUT,
            list_timeout=config.LIST_TIMEOUT,
            unload_timeout=config.UNLOAD_TIMEOUT,
        )
        self.executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=config.MAX_WORKERS,
            thread_name_prefix="gateway-engine",
        )
        self.stream_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=config.MAX_STREAMS,
            thread_name_prefix="gateway-stream",
        )
        self.router = RequestRouter(
            self.engine,
            self.registry,
            self.residency,
            self.executor,
            parameter_table=DEFAULT_PARAMETER_TABLE.with_engine_options(config.engine_options()),
            stream_queue_size=config.STREAM_QUEUE_SIZE,
            stream_executor=self.stream_executor,
        )

    async def run_blocking(self, fn: Callable, *args):
        """Run a blocking residency/engine call on the worker pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args))

    async def warmup(self) -> None:
        """Make DEFAULT_MODEL resident so the first request skips the load."""
        model = self.config.DEFAULT_MODEL
        if not model:
            log.warning("WARMUP_ON_STARTUP is set but DEFAULT_MODEL is empty, skipping warm-up")
            return
        try:
            await self.run_blocking(self.residency.ensure_only, model)
        except GatewayError as e:
            # The gateway still serves other models when warm-up fails
            log.error(f"Warm-up of {model} failed: {e.detail}")

    async def shutdown(self) -> None:
        log.shutdown()
        self.executor.shutdown(wait=False, cancel_futures=True)
        self.stream_executor.shutdown(wait=False, cancel_futures=True)


# Global service instance
_service: GatewayService | None = None


def get_service() -> GatewayService:
    """Get the gateway service instance."""
    if _service is None:
        raise RuntimeError("Service not initialized")
    return _service


def _stream_response(handle: StreamHandle) -> StreamingResponse:
    headers = {"Cache-Control": "no-cache", **handle.headers}
    return StreamingResponse(handle.body, media_type=handle.media_type, headers=headers)


def create_app(service: GatewayService | None = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        service: Pre-built service (tests inject one with a fake engine).
            When omitted, one is created from ``Config()`` at startup.
    """

    @asynccontextmanager
    async def lifespan(app):
        """FastAPI lifespan handler for startup/shutdown."""
        global _service

        # Startup
        _service = service or GatewayService(Config())
        config = _service.config
        log.startup(
            version=SERVICE_VERSION,
            host=config.SERVICE_HOST,
            port=config.SERVICE_PORT,
            engine_url=config.OLLAMA_URL,
            models=_service.registry.ids(),
        )
        if config.WARMUP_ON_STARTUP:
            await _service.warmup()

        yield

        # Shutdown
        await _service.shutdown()
        _service = None

    config = service.config if service is not None else Config()

    app = FastAPI(
        title="Ollama Gateway",
        description="Complexity-aware routing and single-slot model residency for Ollama",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Query-Complexity", "X-Max-Tokens", "X-Response-Mode", "X-Progressive-Mode", "X-Chunk-Size"],
    )

    app.add_middleware(BodySizeLimitMiddleware, max_bytes=config.MAX_BODY_BYTES)
    app.add_middleware(SecurityHeadersMiddleware)

    # -------------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------------

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        ctx = getattr(request.state, "ctx", None)
        if ctx is not None:
            log.api_error(ctx, exc.detail, exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        log.exception("Unhandled error")
        error = InternalError(str(exc) or exc.__class__.__name__)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        detail = f"{location}: {first.get('msg', 'invalid request')}" if location else first.get("msg", "invalid request")
        error = InvalidRequest(detail)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    def _context(request: Request, model: str | None = None, stream: bool = False) -> RequestContext:
        ctx = RequestContext(
            request_id=generate_request_id(),
            method=request.method,
            path=request.url.path,
            model=model,
            stream=stream,
        )
        set_request_id(ctx.request_id)
        request.state.ctx = ctx
        log.api_request(ctx)
        return ctx

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Health check endpoint."""
        return HealthResponse()

    # -------------------------------------------------------------------------
    # Model management
    # -------------------------------------------------------------------------

    @app.get("/api/models", response_model=ModelsResponse, tags=["Models"])
    async def list_models():
        """List the models this gateway is configured to serve."""
        registry = get_service().registry
        return {
            "success": True,
            "models": [m.to_api_format() for m in registry],
            "totalAvailable": len(registry),
        }

    @app.get("/api/models/loaded", response_model=LoadedModelsResponse, tags=["Models"])
    async def list_loaded_models(request: Request):
        """List the models the engine currently holds in memory."""
        service = get_service()
        ctx = _context(request)
        loaded = await service.run_blocking(service.residency.loaded_models)
        log.api_response(ctx)
        return {
            "success": True,
            "loadedModels": [m.to_api_format() for m in loaded],
            "count": len(loaded),
        }

    @app.post("/api/models/preload", response_model=MessageResponse, tags=["Models"])
    async def preload_model(body: ModelRequest, request: Request):
        service = get_service()
        ctx = _context(request, body.model)
        await service.run_blocking(service.residency.preload, body.model)
        log.api_response(ctx)
        return {"success": True, "message": f"Model {body.model} preloaded successfully"}

    @app.post("/api/models/unload", response_model=UnloadResponse, tags=["Models"])
    async def unload_models(request: Request):
        service = get_service()
        ctx = _context(request)
        count = await service.run_blocking(service.residency.unload_all)
        log.api_response(ctx)
        return {
            "success": True,
            "message": f"Successfully unloaded {count} model(s)",
            "unloadedCount": count,
        }

    @app.post("/api/models/switch", response_model=SwitchResponse, tags=["Models"])
    async def switch_model(body: ModelRequest, request: Request):
        """Unload every other model and make the requested one resident."""
        service = get_service()
        ctx = _context(request, body.model)
        count = await service.run_blocking(service.residency.ensure_only, body.model)
        log.api_response(ctx)
        return {
            "success": True,
            "message": f"Successfully switched to {body.model}. Unloaded {count} other model(s).",
            "activeModel": body.model,
            "unloadedCount": count,
        }

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    @app.post("/api/chat", response_model=ChatResponse, tags=["Generation"])
    async def chat(body: ChatRequest, request: Request):
        """
        Chat with complexity-based parameters.

        Streaming responses are the engine's NDJSON lines, with the chosen
        budget in `X-Query-Complexity` and `X-Max-Tokens`.
        """
        ctx = _context(request, body.model, body.stream)
        result = await get_service().router.chat(body.model, body.conversation(), body.stream, ctx)
        log.api_response(ctx)
        if isinstance(result, StreamHandle):
            return _stream_response(result)
        return _generation_body(result, message=result.message)

    @app.post("/api/generate", response_model=GenerateResponse, tags=["Generation"])
    async def generate(body: GenerateRequest, request: Request):
        ctx = _context(request, body.model, body.stream)
        result = await get_service().router.generate(body.model, body.prompt, body.images, body.stream, ctx)
        log.api_response(ctx)
        if isinstance(result, StreamHandle):
            return _stream_response(result)
        return _generation_body(result, response=result.response or "")

    @app.post("/api/chat/resume", response_model=ResumeResponse, tags=["Generation"])
    async def resume_chat(body: ResumeRequest, request: Request):
        """
        Continue a response that was cut off.

        Best effort: the model is asked not to repeat `partial_response`, but
        nothing checks that it complied.
        """
        ctx = _context(request, body.model, body.stream)
        result = await get_service().router.resume(
            body.model, body.conversation(), body.partial_response, body.stream, ctx,
        )
        log.api_response(ctx)
        if isinstance(result, StreamHandle):
            return _stream_response(result)
        return {
            "success": True,
            "message": result.message,
            "mode": "resumption",
            "model": result.plan.model.id,
        }

    @app.post("/api/chat/progressive", tags=["Generation"])
    async def progressive_chat(body: ProgressiveRequest, request: Request):
        """Stream `CHUNK_<n>: ...` lines of fixed size, ending in `DONE` or `ERROR: ...`."""
        service = get_service()
        ctx = _context(request, body.model, stream=True)
        chunk_size = body.chunk_size or service.config.DEFAULT_CHUNK_SIZE
        handle = await service.router.progressive(body.model, body.conversation(), chunk_size, ctx)
        log.api_response(ctx)
        return _stream_response(handle)

    return app


def _generation_body(result: ChatResult, **payload) -> dict:
    plan = result.plan
    return {
        "success": True,
        **payload,
        "model": plan.model.id,
        "modelName": plan.model.display_name,
        "complexity": plan.complexity.value,
        "maxTokens": plan.params.num_predict,
    }


app = create_app()


def main():
    """Entry point for the gateway service."""
    import argparse

    # Load config for defaults
    config = Config()

    parser = argparse.ArgumentParser(description="Complexity-aware gateway in front of an Ollama server")
    parser.add_argument("--host", default=config.SERVICE_HOST, help="Host to bind to")
    parser.add_argument("--port", type=int, default=config.SERVICE_PORT, help="Port to listen on")
    parser.add_argument("--verbose", "-v", action="store_true", default=config.VERBOSE, help="Show prompts and chunk progress")
    parser.add_argument("--debug", action="store_true", help="Enable low-level DEBUG messages (unformatted)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload (dev mode)")
    args = parser.parse_args()

    setup_service_logging(verbose=args.verbose, debug=args.debug)

    import uvicorn

    # When using our rich logging, set uvicorn to warning to reduce noise
    uvicorn_log_level = "debug" if args.debug else "warning"

    uvicorn.run(
        "ollama_gateway.service.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=uvicorn_log_level,
    )
    return 0


if __name__ == "__main__":
    main()
