"""
Async wrapper around the ffmpeg/ffprobe command line tools.

Every invocation runs as an asyncio subprocess so frame extraction and timeline
assembly never block the event loop. Extracted frames are written to caller-chosen
paths and reused when the file already exists.
"""
import asyncio
import json
import logging
import math
import os
import re
from typing import List, Optional, Tuple

from reelforge import config
from reelforge.errors import MediaToolError
from reelforge.file_utils import ensure_parent_dir
from reelforge.schemas import FrameComparison

logger = logging.getLogger(__name__)

# e.g. "SSIM Y:0.987654 (19.08) U:0.99 V:0.99 All:0.987654 (18.87)"
SSIM_PATTERN = re.compile(r"SSIM.*All:([0-9.]+)")
# e.g. "PSNR y:38.1 u:41.2 v:41.0 average:39.02 min:37.5 max:40.1" or "average:inf"
PSNR_PATTERN = re.compile(r"PSNR.*average:(inf|[0-9.]+)")


class MediaFrameTool:
    def __init__(self, ffmpeg_path: str = None, ffprobe_path: str = None):
        self.ffmpeg_path = ffmpeg_path or config.FFMPEG_PATH
        self.ffprobe_path = ffprobe_path or config.FFPROBE_PATH

    async def _run(self, cmd: List[str]) -> Tuple[int, str, str]:
        logger.debug(f"Executing: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise MediaToolError(f"Could not start {cmd[0]}: {e}") from e
        stdout, stderr = await process.communicate()
        return process.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def probe_duration(self, video_path: str) -> float:
        cmd = [
            self.ffprobe_path, "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            video_path
        ]
        code, stdout, stderr = await self._run(cmd)
        if code != 0:
            raise MediaToolError(f"ffprobe failed for {video_path}", stderr)
        try:
            duration = float(json.loads(stdout)["format"]["duration"])
        except (ValueError, KeyError, TypeError) as e:
            raise MediaToolError(f"Could not read duration of {video_path}: {e}", stderr) from e
        if duration <= 0 or math.isnan(duration):
            raise MediaToolError(f"Invalid video duration for {video_path}: {duration}")
        return duration

    async def extract_frame_at(self, video_path: str, timestamp: float, output_path: str) -> str:
        """Writes the frame at `timestamp` seconds to output_path, reusing an existing file."""
        if os.path.exists(output_path):
            logger.debug(f"Frame cache hit: {output_path}")
            return output_path

        ensure_parent_dir(output_path)
        cmd = [
            self.ffmpeg_path, "-y",
            "-ss", f"{timestamp:.3f}",
            "-i", video_path,
            "-vframes", "1",
            "-q:v", "2",
            output_path
        ]
        code, _, stderr = await self._run(cmd)
        if code != 0:
            raise MediaToolError(f"Frame extraction failed for {video_path} at {timestamp:.3f}s", stderr)
        # ffmpeg exits 0 without output when seeking past the end
        if not os.path.exists(output_path):
            raise MediaToolError(f"No frame written for {video_path} at {timestamp:.3f}s", stderr)

        logger.info(f"Extracted frame at {timestamp:.3f}s to {output_path}")
        return output_path

    async def extract_last_frame(self, video_path: str, output_path: str, duration: Optional[float] = None) -> str:
        """
        Frame shortly before the end of the video. `duration` must be the measured length
        of this file; without it ffprobe is run.
        """
        if os.path.exists(output_path):
            return output_path
        if duration is None:
            duration = await self.probe_duration(video_path)
        # Trailing frames are often black or partially decoded
        timestamp = max(0.0, duration - config.LAST_FRAME_OFFSET)
        return await self.extract_frame_at(video_path, timestamp, output_path)

    async def extract_first_frame(self, video_path: str, output_path: str) -> str:
        return await self.extract_frame_at(video_path, 0.0, output_path)

    async def compare_frames(self, frame_a: str, frame_b: str) -> FrameComparison:
        """
        Structural similarity between two images. Falls back to PSNR when the SSIM
        run fails or prints no score; the two scales use different thresholds.
        """
        code, _, stderr = await self._run([
            self.ffmpeg_path, "-i", frame_a, "-i", frame_b, "-lavfi", "ssim", "-f", "null", "-"
        ])
        match = SSIM_PATTERN.search(stderr) if code == 0 else None
        if match:
            similarity = float(match.group(1))
            return FrameComparison(
                similarity=similarity,
                is_match=similarity >= config.SSIM_MATCH_THRESHOLD,
                method="ssim",
            )

        logger.warning(f"SSIM unavailable for {frame_a} vs {frame_b} (exit {code}), falling back to PSNR")
        return await self._compare_frames_psnr(frame_a, frame_b)

    async def _compare_frames_psnr(self, frame_a: str, frame_b: str) -> FrameComparison:
        code, _, stderr = await self._run([
            self.ffmpeg_path, "-i", frame_a, "-i", frame_b, "-lavfi", "psnr", "-f", "null", "-"
        ])
        if code != 0:
            raise MediaToolError(f"Frame comparison failed for {frame_a} vs {frame_b}", stderr)

        match = PSNR_PATTERN.search(stderr)
        if not match:
            raise MediaToolError(f"No similarity score in ffmpeg output for {frame_a} vs {frame_b}", stderr)

        raw = match.group(1)
        if raw == "inf":
            # Identical images
            similarity = 1.0
        else:
            similarity = min(1.0, float(raw) / config.PSNR_NORMALIZER_DB)
        return FrameComparison(
            similarity=similarity,
            is_match=similarity >= config.PSNR_MATCH_THRESHOLD,
            method="psnr",
        )

    # ── Assembly ──────────────────────────────────────────────────

    async def _render(self, cmd: List[str], output_path: str, action: str) -> str:
        code, _, stderr = await self._run(cmd)
        if code != 0:
            raise MediaToolError(f"Failed to {action}: ffmpeg exited with {code}", stderr)
        if not os.path.exists(output_path):
            raise MediaToolError(f"Failed to {action}: no output written to {output_path}", stderr)
        logger.info(f"{action.capitalize()}: {output_path}")
        return output_path

    async def trim_video(self, video_path: str, start: float, end: float, output_path: str) -> str:
        if start < 0 or end <= start:
            raise MediaToolError(f"Invalid trim range {start:.3f}-{end:.3f}s for {video_path}")
        ensure_parent_dir(output_path)
        return await self._render([
            self.ffmpeg_path, "-y",
            "-ss", f"{start:.3f}",
            "-i", video_path,
            "-t", f"{end - start:.3f}",
            "-c", "copy",
            output_path
        ], output_path, "trim video")

    async def merge_clips(self, video_paths: List[str], output_path: str,
                          transitions: Optional[List[Tuple[str, float]]] = None, fps: int = 24) -> str:
        """
        Joins clips end to end. transitions[i] is the (type, seconds) join between
        clip i and clip i+1; without any non-cut transition the streams are copied.
        """
        if not video_paths:
            raise MediaToolError("No clips to merge")
        transitions = list(transitions or [])
        if len(transitions) not in (0, len(video_paths) - 1):
            raise MediaToolError(f"Expected {len(video_paths) - 1} transitions, got {len(transitions)}")
        ensure_parent_dir(output_path)

        if all(kind == "cut" for kind, _ in transitions):
            return await self._concat_copy(video_paths, output_path)

        durations = [await self.probe_duration(path) for path in video_paths]
        cmd = [self.ffmpeg_path, "-y"]
        for path in video_paths:
            cmd += ["-i", path]
        cmd += [
            "-filter_complex", build_transition_filter(durations, transitions, fps),
            "-map", "[v]",
            "-c:v", "libx264", "-preset", "medium", "-crf", "23",
            output_path
        ]
        return await self._render(cmd, output_path, "merge clips")

    async def _concat_copy(self, video_paths: List[str], output_path: str) -> str:
        list_path = f"{output_path}.concat.txt"
        with open(list_path, "w") as f:
            for path in video_paths:
                escaped = os.path.abspath(path).replace("'", r"'\''")
                f.write(f"file '{escaped}'\n")
        try:
            return await self._render([
                self.ffmpeg_path, "-y",
                "-f", "concat", "-safe", "0",
                "-i", list_path,
                "-c", "copy",
                output_path
            ], output_path, "merge clips")
        finally:
            os.remove(list_path)

    async def add_audio_track(self, video_path: str, audio_path: str, output_path: str, volume: float = 1.0) -> str:
        """Muxes audio under the video; the result ends with the shorter stream."""
        ensure_parent_dir(output_path)
        cmd = [self.ffmpeg_path, "-y", "-i", video_path, "-i", audio_path]
        if volume != 1.0:
            cmd += ["-filter:a", f"volume={volume}"]
        cmd += [
            "-map", "0:v:0", "-map", "1:a:0",
            "-c:v", "copy", "-c:a", "aac",
            "-shortest",
            output_path
        ]
        return await self._render(cmd, output_path, "add audio track")

    async def mix_audio_tracks(self, audio_paths: List[str], output_path: str,
                               volumes: Optional[List[float]] = None) -> str:
        if not audio_paths:
            raise MediaToolError("No audio tracks to mix")
        volumes = volumes or [1.0] * len(audio_paths)
        if len(volumes) != len(audio_paths):
            raise MediaToolError(f"Expected {len(audio_paths)} volumes, got {len(volumes)}")
        ensure_parent_dir(output_path)

        cmd = [self.ffmpeg_path, "-y"]
        for path in audio_paths:
            cmd += ["-i", path]
        scaled = ";".join(f"[{i}:a]volume={v}[a{i}]" for i, v in enumerate(volumes))
        inputs = "".join(f"[a{i}]" for i in range(len(audio_paths)))
        cmd += [
            "-filter_complex", f"{scaled};{inputs}amix=inputs={len(audio_paths)}:duration=longest[a]",
            "-map", "[a]",
            output_path
        ]
        return await self._render(cmd, output_path, "mix audio tracks")


# Shot transition types mapped to ffmpeg xfade transitions
XFADE_TRANSITIONS = {
    "dissolve": "dissolve",
    "fade": "fade",
    "motion": "slideleft",
    "wipe": "wipeleft",
}


def build_transition_filter(durations: List[float], transitions: List[Tuple[str, float]], fps: int) -> str:
    """
    filter_complex graph joining len(durations) video inputs into [v]. Cuts become
    concat joins; other transitions overlap the two clips by their duration.
    """
    parts = [f"[{i}:v]fps={fps},format=yuv420p,settb=AVTB,setpts=PTS-STARTPTS[s{i}]"
             for i in range(len(durations))]
    if len(durations) == 1:
        parts.append("[s0]null[v]")
        return ";".join(parts)

    current = "s0"
    elapsed = durations[0]
    for i, (kind, seconds) in enumerate(transitions, start=1):
        label = "v" if i == len(durations) - 1 else f"j{i}"
        if kind == "cut":
            parts.append(f"[{current}][s{i}]concat=n=2:v=1:a=0[{label}]")
            elapsed += durations[i]
        else:
            if kind not in XFADE_TRANSITIONS:
                raise MediaToolError(f"Unsupported transition type: {kind}")
            # Overlap cannot exceed either clip
            seconds = min(seconds, elapsed, durations[i])
            offset = elapsed - seconds
            parts.append(f"[{current}][s{i}]xfade=transition={XFADE_TRANSITIONS[kind]}"
                         f":duration={seconds:.3f}:offset={offset:.3f}[{label}]")
            elapsed = offset + durations[i]
        current = label
    return ";".join(parts)


# Global Instance
media_tool = MediaFrameTool()
