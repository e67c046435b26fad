"""
Frame extraction from video through ffmpeg.

Samples a video at a fixed rate into an ordered sequence of still images,
optionally correcting a fixed rotation before the frames are written.
ffmpeg's own autorotation is switched off, so the requested rotation is the
only one applied; ``get_stream_rotation`` reports what the camera recorded.
"""

import subprocess
from pathlib import Path
from typing import Any, Dict, Optional, Union

import ffmpeg
import structlog

from ..common.errors import ExtractionError, InvalidJobData, JobTimeoutError
from ..common.process import ProcessGuard
from .types import SUPPORTED_ROTATIONS, ExtractionResult, Frame

logger = structlog.get_logger(__name__)

# transpose=1 rotates 90 degrees clockwise, transpose=2 counter-clockwise
TRANSPOSE_FILTERS = {
    0: [],
    90: [1],
    180: [1, 1],
    270: [2],
}

PathLike = Union[str, Path]


def validate_rotation(rotation: int) -> int:
    """Return ``rotation`` if it is one of the supported cardinal angles."""
    if rotation not in SUPPORTED_ROTATIONS:
        raise InvalidJobData(
            f"Unsupported rotation {rotation}; expected one of {SUPPORTED_ROTATIONS}"
        )
    return rotation


def normalize_rotation(degrees: float) -> int:
    """Snap an angle to the nearest cardinal rotation in [0, 360)."""
    return int(round(degrees / 90.0)) * 90 % 360


class FrameExtractor:
    """
    Thin wrapper around the ffmpeg/ffprobe executables.

    Extraction is never retried here: failures surface as
    ``ExtractionError`` and the job layer decides whether to try again.
    """

    def __init__(self, ffmpeg_cmd: str = "ffmpeg", ffprobe_cmd: str = "ffprobe"):
        self.ffmpeg_cmd = ffmpeg_cmd
        self.ffprobe_cmd = ffprobe_cmd
        self.logger = logger.bind(component="FrameExtractor")

    def _inspect(self, video_path: Path) -> Dict[str, Any]:
        if not video_path.is_file():
            raise ExtractionError(
                f"Video file not found: {video_path}", source=str(video_path)
            )

        try:
            return ffmpeg.probe(str(video_path), cmd=self.ffprobe_cmd)
        except ffmpeg.Error as e:
            raise ExtractionError(
                f"Could not read video {video_path}: {_stderr_tail(e.stderr)}",
                source=str(video_path),
            ) from e
        except FileNotFoundError as e:
            raise ExtractionError(
                f"ffprobe executable not available: {self.ffprobe_cmd}"
            ) from e

    def get_video_duration(self, video_path: PathLike) -> float:
        """
        Read the duration of a video in seconds.

        Raises:
            ExtractionError: If the file is missing or cannot be read
        """
        video_path = Path(video_path)
        info = self._inspect(video_path)
        try:
            return float(info["format"]["duration"])
        except (KeyError, TypeError, ValueError) as e:
            raise ExtractionError(
                f"Video {video_path} reports no usable duration",
                source=str(video_path),
            ) from e

    def get_stream_rotation(self, video_path: PathLike) -> int:
        """
        Clockwise correction the camera recorded for the first video stream.

        The display matrix wins over the older ``rotate`` tag. A stream with
        neither, or with an unparsable value, needs no correction.

        Raises:
            ExtractionError: If the file is missing or cannot be read
        """
        video_path = Path(video_path)
        info = self._inspect(video_path)
        stream = next(
            (s for s in info.get("streams", []) if s.get("codec_type") == "video"),
            None,
        )
        if stream is None:
            return 0

        try:
            for side_data in stream.get("side_data_list", []):
                if "rotation" in side_data:
                    # Display matrix angles are counter-clockwise
                    return normalize_rotation(-float(side_data["rotation"]))
            tag = stream.get("tags", {}).get("rotate")
            if tag is not None:
                return normalize_rotation(float(tag))
        except (TypeError, ValueError):
            self.logger.warning("Ignoring unreadable rotation metadata", video_path=str(video_path))
        return 0

    def extract_frames(
        self,
        video_path: PathLike,
        output_dir: PathLike,
        fps: float = 2.0,
        output_format: str = "jpg",
        max_frames: int = 200,
        rotation: int = 0,
        guard: Optional[ProcessGuard] = None,
    ) -> ExtractionResult:
        """
        Sample ``video_path`` into ``output_dir`` as ``frame_NNNN.<format>``.

        Args:
            video_path: Source video
            output_dir: Destination directory, created if missing and never
                cleaned up here
            fps: Frames sampled per second of source video
            output_format: Image file extension (jpg or png)
            max_frames: Hard cap; extraction stops once reached
            rotation: Clockwise correction in degrees (0, 90, 180, 270)
            guard: Optional guard that may kill the decoder on timeout

        Returns:
            ExtractionResult with frames in temporal order

        Raises:
            InvalidJobData: On an unsupported rotation or sampling rate
            ExtractionError: If the source is unreadable or ffmpeg fails
        """
        validate_rotation(rotation)
        if fps <= 0:
            raise InvalidJobData(f"Sampling rate must be positive, got {fps}")
        if max_frames < 1:
            raise InvalidJobData(f"max_frames must be at least 1, got {max_frames}")

        video_path = Path(video_path)
        if not video_path.is_file():
            raise ExtractionError(
                f"Video file not found: {video_path}", source=str(video_path)
            )

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        pattern = output_dir / f"frame_%04d.{output_format}"

        stream = ffmpeg.input(str(video_path), noautorotate=None).filter("fps", fps=fps)
        for transpose in TRANSPOSE_FILTERS[rotation]:
            stream = stream.filter("transpose", transpose)
        stream = stream.output(
            str(pattern), vframes=max_frames, **{"q:v": 2}
        ).overwrite_output()

        self.logger.info(
            "Extracting frames",
            video_path=str(video_path),
            fps=fps,
            max_frames=max_frames,
            rotation=rotation,
        )
        self._run(stream, guard, source=str(video_path))

        paths = sorted(output_dir.glob(f"frame_*.{output_format}"))[:max_frames]
        frames = [
            Frame(path=str(path), timestamp_seconds=index / fps)
            for index, path in enumerate(paths)
        ]

        self.logger.info("Frames extracted", frame_count=len(frames))
        return ExtractionResult(frames=frames)

    def extract_single_frame(
        self,
        video_path: PathLike,
        output_path: PathLike,
        at_seconds: float,
        rotation: int = 0,
        guard: Optional[ProcessGuard] = None,
    ) -> Path:
        """Write the frame at ``at_seconds`` to ``output_path``."""
        validate_rotation(rotation)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        stream = ffmpeg.input(str(video_path), ss=max(0.0, at_seconds), noautorotate=None)
        for transpose in TRANSPOSE_FILTERS[rotation]:
            stream = stream.filter("transpose", transpose)
        stream = stream.output(
            str(output_path), vframes=1, **{"q:v": 2}
        ).overwrite_output()

        self._run(stream, guard, source=str(video_path))

        if not output_path.is_file():
            raise ExtractionError(
                f"ffmpeg produced no frame at {at_seconds:.2f}s",
                source=str(video_path),
            )
        return output_path

    def _run(self, stream, guard: Optional[ProcessGuard], source: str) -> None:
        """Run an ffmpeg stream to completion under the optional guard."""
        if guard:
            guard.check()

        try:
            process = stream.run_async(cmd=self.ffmpeg_cmd, pipe_stderr=True)
        except FileNotFoundError as e:
            raise ExtractionError(
                f"ffmpeg executable not available: {self.ffmpeg_cmd}"
            ) from e

        if guard:
            guard.register(process)
        try:
            _, stderr = process.communicate(
                timeout=guard.remaining() if guard else None
            )
        except subprocess.TimeoutExpired as e:
            process.kill()
            process.communicate()
            raise JobTimeoutError(
                "ffmpeg did not finish before the job deadline", source=source
            ) from e
        finally:
            if guard:
                guard.unregister(process)

        if guard:
            guard.check()

        if process.returncode != 0:
            raise ExtractionError(
                f"ffmpeg exited with code {process.returncode}: {_stderr_tail(stderr)}",
                source=source,
            )


def _stderr_tail(stderr: Optional[bytes], limit: int = 300) -> str:
    if not stderr:
        return "no diagnostic output"
    text = stderr.decode("utf-8", errors="replace").strip()
    return text[-limit:]
