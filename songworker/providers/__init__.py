"""External provider clients used by the stage processors."""

from songworker.providers.ace_step import AceStepClient
from songworker.providers.audio_processing import FfmpegSilenceTrimmer
from songworker.providers.base import (
    AudioPollResult,
    AudioSubmitRequest,
    AudioSynthesisProvider,
    AudioTaskStatus,
    CoverImage,
    ImageGenerationProvider,
    PromptDistance,
    RecentSong,
    SilenceTrimmer,
    SongLibraryWriter,
    TextGenerationParams,
    TextGenerationProvider,
    TrimResult,
)
from songworker.providers.image import ImageProviderRouter
from songworker.providers.storage import SongLibrary
from songworker.providers.text import TextProviderRouter

__all__ = [
    "AceStepClient",
    "AudioPollResult",
    "AudioSubmitRequest",
    "AudioSynthesisProvider",
    "AudioTaskStatus",
    "CoverImage",
    "FfmpegSilenceTrimmer",
    "ImageGenerationProvider",
    "ImageProviderRouter",
    "PromptDistance",
    "RecentSong",
    "SilenceTrimmer",
    "SongLibrary",
    "SongLibraryWriter",
    "TextGenerationParams",
    "TextGenerationProvider",
    "TextProviderRouter",
    "TrimResult",
]
