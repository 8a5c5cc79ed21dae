"""Immutable per-session streaming configuration."""

from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..utils.config import Settings

# Fenced code delimiter
CODE_FENCE = "```"


class HumanizerDegree(IntEnum):
    """How hard delivery tries to look like a person typing."""

    NONE = 0
    LIGHT = 1
    MEDIUM = 2  # typing simulation and pauses
    HEAVY = 3  # additionally flushes at sentence boundaries

    @property
    def paces(self) -> bool:
        return self >= HumanizerDegree.MEDIUM


@dataclass(frozen=True)
class BufferConfig:
    """Thresholds that drive the segmentation engine."""

    regular_flush_size: int = 500
    code_block_flush_size: int = 15000
    sentence_flush: bool = False

    def __post_init__(self) -> None:
        if self.regular_flush_size <= 0 or self.code_block_flush_size <= 0:
            raise ValueError("flush sizes must be positive")


@dataclass(frozen=True)
class PacingConfig:
    """Typing simulation settings. Durations are in seconds."""

    enabled: bool = False
    per_char_delay: float = 0.010
    min_visible_duration: float = 0.75
    max_typing_time: float = 4.0
    min_pause: float = 0.25
    max_pause: float = 1.5
    thinking_pause_chance: float = 0.25

    def __post_init__(self) -> None:
        if self.min_visible_duration > self.max_typing_time:
            raise ValueError("min_visible_duration must not exceed max_typing_time")
        if self.min_pause > self.max_pause:
            raise ValueError("min_pause must not exceed max_pause")

    @classmethod
    def from_degree(cls, degree: HumanizerDegree, **overrides: Any) -> "PacingConfig":
        return cls(enabled=HumanizerDegree(degree).paces, **overrides)


@dataclass(frozen=True)
class StreamConfig:
    """Everything one orchestration session needs to know, fixed at session start."""

    model: str = ""
    # None uses the provider's configured temperature
    temperature: float | None = None
    max_output_tokens: int | None = None
    max_message_length: int = 1950
    inactivity_timeout: float = 120.0
    humanizer_degree: HumanizerDegree = HumanizerDegree.LIGHT
    buffer: BufferConfig = field(default_factory=BufferConfig)
    pacing: PacingConfig = field(default_factory=PacingConfig)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        humanizer_degree: int | None = None,
        **overrides: Any,
    ) -> "StreamConfig":
        """Build a session config from application settings."""
        streaming = settings.streaming
        degree = HumanizerDegree(
            streaming.humanizer_degree if humanizer_degree is None else humanizer_degree
        )
        sentence_flush = (
            degree == HumanizerDegree.HEAVY
            if streaming.sentence_flush is None
            else streaming.sentence_flush
        )
        config = cls(
            max_message_length=streaming.max_message_length,
            inactivity_timeout=streaming.inactivity_timeout_seconds,
            humanizer_degree=degree,
            buffer=BufferConfig(
                regular_flush_size=streaming.flush_buffer_size,
                code_block_flush_size=streaming.flush_buffer_size_code_block,
                sentence_flush=sentence_flush,
            ),
            pacing=PacingConfig.from_degree(
                degree,
                per_char_delay=streaming.type_speed_ms_per_char / 1000,
                min_visible_duration=streaming.min_typing_ms / 1000,
                max_typing_time=streaming.max_typing_ms / 1000,
                min_pause=streaming.min_pause_ms / 1000,
                max_pause=streaming.max_pause_ms / 1000,
                thinking_pause_chance=streaming.thinking_pause_chance,
            ),
        )
        return replace(config, **overrides) if overrides else config
