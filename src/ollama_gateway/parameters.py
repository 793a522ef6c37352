"""
Adaptive generation parameters.

A base sampling profile overridden per complexity class. ``ParameterTable``
is the only place these numbers exist; the router asks for a profile and
passes it through untouched.
"""

from dataclasses import dataclass, field, replace
from typing import Any

from .complexity import ComplexityClass


@dataclass(frozen=True)
class GenerationParameters:
    temperature: float
    top_k: int
    top_p: float
    num_ctx: int
    num_predict: int
    repeat_penalty: float
    repeat_last_n: int
    timeout: float  # seconds
    engine_options: tuple = ()

    def to_options(self) -> dict[str, Any]:
        """Ollama ``options`` payload. The timeout stays on our side."""
        options = dict(self.engine_options)
        options.update({
            "temperature": self.temperature,
            "top_k": self.top_k,
            "top_p": self.top_p,
            "num_ctx": self.num_ctx,
            "num_predict": self.num_predict,
            "repeat_penalty": self.repeat_penalty,
            "repeat_last_n": self.repeat_last_n,
        })
        return options


@dataclass(frozen=True)
class ClassProfile:
    """Per-class overrides of the base profile."""
    num_predict_text: int
    num_predict_image: int
    num_ctx: int
    timeout: float
    temperature: float | None = None


@dataclass(frozen=True)
class ParameterTable:
    base: GenerationParameters = GenerationParameters(
        temperature=0.7,
        top_k=40,
        top_p=0.9,
        num_ctx=4096,
        num_predict=500,
        repeat_penalty=1.1,
        repeat_last_n=64,
        timeout=120.0,
    )
    profiles: dict = field(default_factory=lambda: {
        ComplexityClass.SIMPLE: ClassProfile(500, 500, 4096, 120.0),
        ComplexityClass.MODERATE: ClassProfile(1200, 1000, 4096, 180.0),
        ComplexityClass.COMPLEX: ClassProfile(2500, 2000, 6144, 300.0),
        ComplexityClass.VERY_COMPLEX: ClassProfile(4000, 3000, 8192, 600.0, temperature=0.8),
    })

    def with_engine_options(self, options: dict[str, Any]) -> "ParameterTable":
        """Copy of this table whose profiles carry host tuning options."""
        base = replace(self.base, engine_options=tuple(sorted(options.items())))
        return replace(self, base=base)


DEFAULT_PARAMETER_TABLE = ParameterTable()


def select_parameters(
    complexity: ComplexityClass,
    has_images: bool = False,
    table: ParameterTable = DEFAULT_PARAMETER_TABLE,
) -> GenerationParameters:
    """Look up the generation parameters for a complexity class."""
    profile = table.profiles[ComplexityClass(complexity)]
    return replace(
        table.base,
        num_predict=profile.num_predict_image if has_images else profile.num_predict_text,
        num_ctx=profile.num_ctx,
        timeout=profile.timeout,
        temperature=profile.temperature if profile.temperature is not None else table.base.temperature,
    )
