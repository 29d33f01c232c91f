"""FFmpeg post-processing: caption overlay then background music.

Each step writes a new file; intermediates are always removed and the input
is removed once the final file exists.
"""

import asyncio
import logging
import os
import random
import uuid
from pathlib import Path
from typing import Optional, Tuple

from ..errors import PostProcessingFailure
from ..ffmpeg_runner import FfmpegResult, FfmpegRunner
from ..models import PostProcessingConfig
from ..queue.models import PostProcessingOptions
from .base import PostProcessor

logger = logging.getLogger(__name__)

RANDOM = "random"
CAPTION_POSITIONS = ("top", "center", "bottom")
CAPTION_SIZES = ("60", "80", "120")
CAPTION_COLORS = ("white", "yellow", "red", "black")
DEFAULT_CAPTION_SIZE = 80
MUSIC_DURATION_FALLBACK_S = 60.0


def caption_y(position: str, margin_px: int = 120) -> str:
    """drawtext y expression for a caption position (unknown → bottom)."""
    position = position.lower()
    if position == "top":
        return str(margin_px)
    if position == "center":
        return "h/2-text_h/2"
    return f"h-{margin_px}"


def resolve_caption_style(
    options: PostProcessingOptions, rng: random.Random
) -> Tuple[str, int, str]:
    """Pick concrete (position, size, color), replacing "random" values."""
    position = options.caption_position
    if position == RANDOM:
        position = rng.choice(CAPTION_POSITIONS)

    size = options.caption_size
    if size == RANDOM:
        size = rng.choice(CAPTION_SIZES)
    try:
        font_size = int(size)
    except ValueError:
        logger.warning(f"Invalid caption size {size!r}; using {DEFAULT_CAPTION_SIZE}")
        font_size = DEFAULT_CAPTION_SIZE

    color = options.caption_color
    if color == RANDOM:
        color = rng.choice(CAPTION_COLORS)

    return position, font_size, color


def music_start_offset(music_duration_s: float, tail_s: float, rng: random.Random) -> int:
    """Random whole-second start in ``[0, max(1, duration - tail))``."""
    upper = max(1, int(music_duration_s - tail_s))
    return rng.randrange(0, upper)


class FfmpegPostProcessor(PostProcessor):
    """PostProcessor backed by FfmpegRunner.

    The blocking ffmpeg calls run in a worker thread. Callers bound how many
    run at once (the scheduler holds a media semaphore around ``process``).
    """

    def __init__(
        self,
        config: Optional[PostProcessingConfig] = None,
        rng: Optional[random.Random] = None,
        artifact_dir: Optional[str] = None,
    ):
        self.config = config or PostProcessingConfig()
        self.rng = rng or random.Random()
        self.artifact_dir = artifact_dir

    def _runner(self) -> FfmpegRunner:
        return FfmpegRunner(
            global_timeout_s=self.config.timeout_s,
            kill_grace_period_s=self.config.kill_grace_period_s,
            save_artifacts_on_failure=self.config.save_artifacts_on_failure,
            artifact_dir=self.artifact_dir,
        )

    async def process(self, input_path: str, options: PostProcessingOptions) -> str:
        return await asyncio.to_thread(self.process_sync, input_path, options)

    def process_sync(self, input_path: str, options: PostProcessingOptions) -> str:
        """Run the enabled steps and return the final file path."""
        source = Path(input_path)
        if not source.exists():
            raise PostProcessingFailure(f"Input video not found: {input_path}")
        if not options.has_work:
            return input_path

        output = source.with_name(f"{source.stem}_final{source.suffix or '.mp4'}")
        intermediates = []
        current = source

        try:
            if options.caption_text:
                caption_out = source.with_name(f".caption_{uuid.uuid4().hex[:8]}.mp4")
                intermediates.append(caption_out)
                self._add_caption(current, caption_out, options)
                current = caption_out

            if options.music_path:
                if Path(options.music_path).exists():
                    self._add_music(current, output, options)
                    current = output
                else:
                    logger.warning(f"Background music not found, skipping: {options.music_path}")

            if current != output:
                os.replace(current, output)
        except BaseException:
            output.unlink(missing_ok=True)
            raise
        finally:
            for path in intermediates:
                path.unlink(missing_ok=True)

        source.unlink(missing_ok=True)
        logger.info(f"Post-processed {source.name} → {output.name}")
        return str(output)

    def _add_caption(self, input_path: Path, output_path: Path, options: PostProcessingOptions) -> None:
        position, font_size, color = resolve_caption_style(options, self.rng)
        logger.debug(f"Caption style: {position}, {font_size}px, {color}")

        result = self._runner().overlay_caption(
            str(input_path),
            str(output_path),
            options.caption_text,
            y=caption_y(position, self.config.caption_margin_px),
            font_size=font_size,
            font_color=color,
            border_width=self.config.border_width,
            threads=self.config.threads,
            preset=self.config.preset,
            crf=self.config.crf,
        )
        self._check(result, "Caption overlay")

    def _add_music(self, input_path: Path, output_path: Path, options: PostProcessingOptions) -> None:
        runner = self._runner()
        duration = runner.probe_duration(options.music_path)
        if duration is None:
            logger.warning(
                f"Could not read duration of {options.music_path}; assuming {MUSIC_DURATION_FALLBACK_S:.0f}s"
            )
            duration = MUSIC_DURATION_FALLBACK_S

        start = music_start_offset(duration, self.config.music_tail_s, self.rng)
        logger.debug(f"Music start offset: {start}s of {duration:.1f}s")

        result = runner.mix_background_music(
            str(input_path),
            options.music_path,
            str(output_path),
            start_s=start,
            volume=options.music_volume,
            threads=self.config.threads,
        )
        self._check(result, "Background music")

    @staticmethod
    def _check(result: FfmpegResult, step: str) -> None:
        if result.success:
            return
        detail = result.error_tail() or f"exit code {result.returncode}"
        kind = result.error_type.value if result.error_type else "unknown"
        raise PostProcessingFailure(f"{step} failed ({kind}): {detail}")
