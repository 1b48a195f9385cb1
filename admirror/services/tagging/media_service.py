"""
Media Service

Video processing via FFmpeg for the video tagging pipeline:
- Downloading the source video
- Probing its duration
- Extracting keyframes
- Extracting the audio track
- Cleaning up per-ad temp files

All methods are sync subprocess calls and should be wrapped with
asyncio.to_thread() when called from async code.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

import httpx

from ...core.config import Config
from ..models import KeyframeExtractionResult

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 60.0
FFMPEG_TIMEOUT = 30

# Keyframe positions as fractions of the video length
FRAME_POSITIONS = (0.0, 0.25, 0.5, 0.75, 0.99)


class MediaService:
    """Service for video keyframe and audio extraction via FFmpeg"""

    def __init__(self, temp_dir: Optional[str] = None):
        """Initialize media service and locate executables."""
        self.temp_dir = Path(temp_dir or Config.VIDEO_TEMP_DIR)
        self._ffmpeg_path = self._find_ffmpeg()
        self._ffprobe_path = self._find_ffprobe()
        logger.info(f"MediaService initialized (ffmpeg: {self._ffmpeg_path}, temp: {self.temp_dir})")

    def _find_ffmpeg(self) -> Optional[str]:
        """Find ffmpeg executable"""
        path = shutil.which("ffmpeg")
        if not path:
            logger.warning("FFmpeg not found. Video extraction will be unavailable.")
        return path

    def _find_ffprobe(self) -> Optional[str]:
        """Find ffprobe executable"""
        path = shutil.which("ffprobe")
        if not path:
            logger.warning("FFprobe not found. Duration detection will be unavailable.")
        return path

    @property
    def available(self) -> bool:
        """Check if FFmpeg is available"""
        return bool(self._ffmpeg_path and self._ffprobe_path)

    def _video_path(self, ad_id: str) -> Path:
        return self.temp_dir / f"{ad_id}.mp4"

    def _audio_path(self, ad_id: str) -> Path:
        return self.temp_dir / f"{ad_id}.mp3"

    def _frame_path(self, ad_id: str, index: int) -> Path:
        return self.temp_dir / f"{ad_id}_frame_{index}.jpg"

    def download_video(self, url: str, dest: Path) -> None:
        """
        Stream a video to disk.

        Raises:
            httpx.HTTPError: on transport errors or non-2xx responses
        """
        with httpx.stream("GET", url, timeout=DOWNLOAD_TIMEOUT, follow_redirects=True) as response:
            response.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)

    def get_duration_seconds(self, video_path: Path) -> float:
        """
        Get video duration in seconds.

        Returns:
            Duration in seconds, or 0 if detection fails
        """
        if not self._ffprobe_path:
            logger.warning("FFprobe not available, cannot get duration")
            return 0.0

        try:
            result = subprocess.run(
                [
                    self._ffprobe_path,
                    "-v", "quiet",
                    "-show_entries", "format=duration",
                    "-of", "csv=p=0",
                    str(video_path)
                ],
                capture_output=True,
                text=True,
                timeout=FFMPEG_TIMEOUT
            )
            return float(result.stdout.strip())

        except (ValueError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to get duration for {video_path}: {e}")
            return 0.0

    def _frame_offsets(self, duration_seconds: float) -> List[float]:
        if duration_seconds > 0:
            return [max(0.0, p * duration_seconds) for p in FRAME_POSITIONS]
        # Unknown length: first five seconds
        return [float(i) for i in range(len(FRAME_POSITIONS))]

    def extract_frame(self, video_path: Path, offset: float, frame_path: Path) -> Optional[bytes]:
        """Extract one JPEG frame at ``offset`` seconds. None on failure."""
        try:
            subprocess.run(
                [
                    self._ffmpeg_path,
                    "-ss", f"{offset:.2f}",
                    "-i", str(video_path),
                    "-vframes", "1",
                    "-q:v", "2",
                    "-y",
                    str(frame_path)
                ],
                capture_output=True,
                timeout=FFMPEG_TIMEOUT,
                check=True
            )
            data = frame_path.read_bytes()
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"Failed to extract frame at {offset:.2f}s from {video_path.name}: {e}")
            return None
        frame_path.unlink(missing_ok=True)
        return data

    def extract_audio(self, video_path: Path, audio_path: Path) -> Optional[str]:
        """Extract the audio track as mp3. None when there is no audio."""
        try:
            subprocess.run(
                [
                    self._ffmpeg_path,
                    "-i", str(video_path),
                    "-vn",
                    "-acodec", "libmp3lame",
                    "-q:a", "4",
                    "-y",
                    str(audio_path)
                ],
                capture_output=True,
                timeout=FFMPEG_TIMEOUT,
                check=True
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            logger.debug(f"No audio extracted from {video_path.name}: {e}")
            return None
        if not audio_path.exists():
            return None
        return str(audio_path)

    def extract_keyframes_and_audio(self, video_url: str, ad_id: str) -> KeyframeExtractionResult:
        """
        Download a video and pull out keyframes plus its audio track.

        NOTE: This is a sync method. When calling from async code,
        wrap with: await asyncio.to_thread(media.extract_keyframes_and_audio, url, ad_id)

        Args:
            video_url: Source video URL
            ad_id: Ad ID, used to name temp files

        Returns:
            KeyframeExtractionResult (frames may be empty, audio_path may be None)

        Raises:
            RuntimeError: If FFmpeg is not installed
            httpx.HTTPError: If the download fails
        """
        if not self.available:
            raise RuntimeError("FFmpeg is not available")

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        video_path = self._video_path(ad_id)

        self.download_video(video_url, video_path)
        try:
            duration_seconds = self.get_duration_seconds(video_path)

            frames: List[bytes] = []
            for i, offset in enumerate(self._frame_offsets(duration_seconds)):
                frame = self.extract_frame(video_path, offset, self._frame_path(ad_id, i))
                if frame is not None:
                    frames.append(frame)

            audio_path = self.extract_audio(video_path, self._audio_path(ad_id))
        finally:
            video_path.unlink(missing_ok=True)

        logger.debug(
            f"Extracted {len(frames)} frames from ad {ad_id} "
            f"({duration_seconds:.1f}s, audio: {bool(audio_path)})"
        )
        return KeyframeExtractionResult(
            frames=frames,
            duration_seconds=duration_seconds,
            audio_path=audio_path,
        )

    def cleanup_temp_files(self, ad_id: str) -> None:
        """Remove every temp file for an ad. Never raises."""
        paths = [self._video_path(ad_id), self._audio_path(ad_id)]
        paths += [self._frame_path(ad_id, i) for i in range(len(FRAME_POSITIONS))]
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove temp file {path}: {e}")
