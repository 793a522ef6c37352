"""
Request routing.

Every entry point follows the same order: validate against the registry,
classify, pick parameters, settle model residency, then make exactly one
engine call. Validation failures never reach the engine and engine failures
are never retried.
"""

import asyncio
import concurrent.futures
import functools
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterator, List, Optional, Sequence

from .clients.base import EngineClient, EngineStream
from .complexity import (
    DEFAULT_COMPLEXITY_TABLE,
    ComplexityClass,
    ComplexityScore,
    ComplexityTable,
    analyze_complexity,
)
from .exceptions import InvalidRequest, UnsupportedMedia
from .models.message import ConversationMessage
from .models.registry import ModelDescriptor, ModelRegistry
from .parameters import (
    DEFAULT_PARAMETER_TABLE,
    GenerationParameters,
    ParameterTable,
    select_parameters,
)
from .residency import ResidencyManager
from .service.logging import RequestContext, generate_request_id, get_service_logger
from .streaming import build_resumption_messages, passthrough_lines, progressive_lines, relay

log = get_service_logger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


@dataclass(frozen=True)
class RoutePlan:
    """Decisions made for one request before the engine is touched."""
    model: ModelDescriptor
    messages: List[ConversationMessage]
    score: ComplexityScore
    params: GenerationParameters

    @property
    def complexity(self) -> ComplexityClass:
        return self.score.complexity

    def headers(self) -> dict[str, str]:
        return {
            "X-Query-Complexity": self.complexity.value,
            "X-Max-Tokens": str(self.params.num_predict),
        }


@dataclass
class ChatResult:
    """Non-streaming outcome plus the decisions behind it."""
    plan: RoutePlan
    body: dict

    @property
    def message(self) -> Any:
        return self.body.get("message")

    @property
    def response(self) -> Any:
        return self.body.get("response")


@dataclass
class StreamHandle:
    """Streaming outcome: an async body and the headers to send with it."""
    plan: RoutePlan
    body: AsyncIterator
    headers: dict[str, str] = field(default_factory=dict)
    media_type: str = NDJSON_MEDIA_TYPE


class RequestRouter:

    def __init__(
        self,
        engine: EngineClient,
        registry: ModelRegistry,
        residency: ResidencyManager,
        executor: concurrent.futures.Executor,
        complexity_table: ComplexityTable = DEFAULT_COMPLEXITY_TABLE,
        parameter_table: ParameterTable = DEFAULT_PARAMETER_TABLE,
        stream_queue_size: int = 64,
        stream_executor: Optional[concurrent.futures.Executor] = None,
    ):
        self.engine = engine
        self.registry = registry
        self.residency = residency
        self.executor = executor
        self.complexity_table = complexity_table
        self.parameter_table = parameter_table
        self.stream_queue_size = stream_queue_size
        # Relay workers live as long as the client reads; keep them off the call pool
        self.stream_executor = stream_executor or executor

    # -------------------------------------------------------------------------
    # Planning (synchronous, no I/O)
    # -------------------------------------------------------------------------

    def plan(
        self,
        model_id: Optional[str],
        messages: Sequence[ConversationMessage],
        force_complexity: Optional[ComplexityClass] = None,
    ) -> RoutePlan:
        """Validate the request and compute its complexity and parameters.

        Raises:
            InvalidModel: model is not registered.
            UnsupportedMedia: images sent to a text-only model.
            InvalidRequest: no messages.
        """
        descriptor = self.registry.require(model_id)
        has_images = any(m.has_images for m in messages)
        if has_images and not descriptor.supports_images:
            raise UnsupportedMedia(descriptor.id)
        if not messages:
            raise InvalidRequest("At least one message is required")

        if force_complexity is not None:
            # Forced profiles are text budgets: the caller decided the cost up front
            score = ComplexityScore(force_complexity, 0)
            params = select_parameters(force_complexity, False, self.parameter_table)
        else:
            score = analyze_complexity(messages, self.complexity_table)
            params = select_parameters(score.complexity, has_images, self.parameter_table)
        return RoutePlan(descriptor, list(messages), score, params)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def chat(
        self,
        model_id: Optional[str],
        messages: Sequence[ConversationMessage],
        stream: bool = False,
        ctx: Optional[RequestContext] = None,
    ) -> ChatResult | StreamHandle:
        plan = await self._prepare(model_id, messages, ctx)
        if stream:
            open_stream = functools.partial(
                self.engine.stream_chat, plan.model.id, plan.messages,
                plan.params.to_options(), plan.params.timeout,
            )
            return await self._stream(plan, open_stream, passthrough_lines, plan.headers())

        body = await self._run(
            self.engine.chat, plan.model.id, plan.messages,
            plan.params.to_options(), plan.params.timeout,
        )
        return ChatResult(plan, body)

    async def generate(
        self,
        model_id: Optional[str],
        prompt: str,
        images: Optional[List[str]] = None,
        stream: bool = False,
        ctx: Optional[RequestContext] = None,
    ) -> ChatResult | StreamHandle:
        images = list(images or [])
        messages = [ConversationMessage("user", prompt or "", images)]
        plan = await self._prepare(model_id, messages, ctx)
        if stream:
            open_stream = functools.partial(
                self.engine.stream_generate, plan.model.id, prompt or "", images,
                plan.params.to_options(), plan.params.timeout,
            )
            return await self._stream(plan, open_stream, passthrough_lines, plan.headers())

        body = await self._run(
            self.engine.generate, plan.model.id, prompt or "", images,
            plan.params.to_options(), plan.params.timeout,
        )
        return ChatResult(plan, body)

    async def resume(
        self,
        model_id: Optional[str],
        messages: Sequence[ConversationMessage],
        partial_response: str,
        stream: bool = False,
        ctx: Optional[RequestContext] = None,
    ) -> ChatResult | StreamHandle:
        """Ask the model to continue a cut-off answer.

        Always uses the ``complex`` profile. The continuation may still repeat
        part of ``partial_response``; that depends on the model.
        """
        if not partial_response:
            raise InvalidRequest("partial_response is required to resume")
        self.registry.require(model_id)
        continuation = build_resumption_messages(messages, partial_response)
        plan = await self._prepare(model_id, continuation, ctx, force_complexity=ComplexityClass.COMPLEX)
        if stream:
            open_stream = functools.partial(
                self.engine.stream_chat, plan.model.id, plan.messages,
                plan.params.to_options(), plan.params.timeout,
            )
            headers = {**plan.headers(), "X-Response-Mode": "resumption"}
            return await self._stream(plan, open_stream, passthrough_lines, headers)

        body = await self._run(
            self.engine.chat, plan.model.id, plan.messages,
            plan.params.to_options(), plan.params.timeout,
        )
        return ChatResult(plan, body)

    async def progressive(
        self,
        model_id: Optional[str],
        messages: Sequence[ConversationMessage],
        chunk_size: int,
        ctx: Optional[RequestContext] = None,
    ) -> StreamHandle:
        """Stream the reply as fixed-size ``CHUNK_<n>`` lines."""
        if chunk_size <= 0:
            raise InvalidRequest(f"chunk_size must be positive, got {chunk_size}")
        plan = await self._prepare(model_id, messages, ctx)
        open_stream = functools.partial(
            self.engine.stream_chat, plan.model.id, plan.messages,
            plan.params.to_options(), plan.params.timeout,
        )
        headers = {
            **plan.headers(),
            "X-Progressive-Mode": "true",
            "X-Chunk-Size": str(chunk_size),
        }
        lines = functools.partial(progressive_lines, chunk_size=chunk_size)
        return await self._stream(plan, open_stream, lines, headers, media_type="text/plain")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _prepare(
        self,
        model_id: Optional[str],
        messages: Sequence[ConversationMessage],
        ctx: Optional[RequestContext],
        force_complexity: Optional[ComplexityClass] = None,
    ) -> RoutePlan:
        ctx = ctx or RequestContext(generate_request_id(), "-", "-", model=model_id)
        plan = self.plan(model_id, messages, force_complexity)
        log.complexity(ctx, plan.complexity.value, plan.score.score, plan.params.num_predict, plan.params.timeout)
        log.prompt(ctx, plan.messages[-1].content)
        await self._run(self.residency.ensure_only, plan.model.id)
        return plan

    async def _run(self, fn: Callable, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args))

    async def _stream(
        self,
        plan: RoutePlan,
        open_stream: Callable[[], EngineStream],
        lines: Callable[[EngineStream], Iterator],
        headers: dict[str, str],
        media_type: str = NDJSON_MEDIA_TYPE,
    ) -> StreamHandle:
        """Open the engine stream on a relay worker and wait for its first item.

        The worker owns the engine stream from the moment it is opened. If the
        returned body is never read, the stall timeout closes it. Errors opening it
        raise here, before any response headers are sent.
        """
        body = relay(
            lambda: lines(open_stream()),
            self.stream_executor,
            self.stream_queue_size,
            stall_timeout=plan.params.timeout,
        )
        try:
            head = [await body.__anext__()]
        except StopAsyncIteration:
            head = []
        return StreamHandle(plan, _chained(head, body), headers, media_type)


async def _chained(head: List[Any], rest: AsyncIterator) -> AsyncIterator:
    try:
        for item in head:
            yield item
        async for item in rest:
            yield item
    finally:
        await rest.aclose()
