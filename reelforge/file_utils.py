import os
import logging

from reelforge import config

logger = logging.getLogger(__name__)


def get_frames_dir(shot_id: str) -> str:
    """Directory holding frames extracted from a shot's clips."""
    if not shot_id:
        raise ValueError("shot_id is required for frame storage")
    return os.path.join(config.STORAGE_DIR, "frames", shot_id)


def last_frame_path(shot_id: str, clip_id: str) -> str:
    # Deterministic so repeated continuity lookups reuse the extracted image
    return os.path.join(get_frames_dir(shot_id), f"last_frame_{clip_id}.png")


def first_frame_path(shot_id: str, clip_id: str) -> str:
    return os.path.join(get_frames_dir(shot_id), f"first_frame_{clip_id}.png")


def ensure_parent_dir(path: str) -> str:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    return path


def resolve_output_path(reference: str) -> str:
    """
    Maps a backend output reference ("type/subfolder/filename") to a local file path.
    Absolute paths are returned unchanged.
    """
    if not reference or os.path.isabs(reference):
        return reference
    return os.path.join(config.COMFYUI_OUTPUT_ROOT, reference)


def get_exports_dir(project_id: str) -> str:
    """Directory holding rendered timeline exports of a project."""
    if not project_id:
        raise ValueError("project_id is required for export storage")
    return os.path.join(config.STORAGE_DIR, "exports", project_id)
