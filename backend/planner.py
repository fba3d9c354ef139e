"""
Clip planning: turn a source duration into the ordered list of clips to render.

The plan only covers whole clips. A trailing remainder shorter than the
requested clip length is dropped, so a 185 s source cut into 60 s clips
yields three clips starting at 0, 60 and 120.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class ClipVariant(str, Enum):
    AUDIO = "audio"              # trimmed audio only → .mp3
    IMAGE_AUDIO = "image_audio"  # still image held over the audio slice → .mp4
    VIDEO = "video"              # trimmed source video → .mp4


SOURCE_KINDS = ("audio", "video")


@dataclass(frozen=True)
class ClipSpec:
    index: int
    start: float
    duration: float
    variant: ClipVariant
    image_index: Optional[int] = None

    @property
    def extension(self) -> str:
        return ".mp3" if self.variant is ClipVariant.AUDIO else ".mp4"

    def output_name(self, job_id: str) -> str:
        """Deterministic file name, unique per job and clip."""
        return f"{job_id}_clip{self.index + 1}{self.extension}"


def plan_clips(
    duration: float,
    clip_length: float,
    num_images: int = 0,
    source_kind: str = "audio",
) -> List[ClipSpec]:
    """
    Return one ClipSpec per whole *clip_length* interval of *duration*.

    Audio sources become audio-only clips when *num_images* is 0, otherwise
    image+audio clips with images assigned round-robin (clip i → image
    i mod num_images). Video sources always produce plain video clips.
    """
    if clip_length <= 0:
        raise ValueError(f"clip_length must be positive, got {clip_length}")
    if source_kind not in SOURCE_KINDS:
        raise ValueError(f"Unknown source kind: {source_kind!r}")

    num_clips = max(0, math.floor(duration / clip_length))

    specs: List[ClipSpec] = []
    for i in range(num_clips):
        if source_kind == "video":
            variant, image_index = ClipVariant.VIDEO, None
        elif num_images > 0:
            variant, image_index = ClipVariant.IMAGE_AUDIO, i % num_images
        else:
            variant, image_index = ClipVariant.AUDIO, None
        specs.append(
            ClipSpec(
                index=i,
                start=i * clip_length,
                duration=clip_length,
                variant=variant,
                image_index=image_index,
            )
        )
    return specs
