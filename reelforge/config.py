import os

# Base Directories
PACKAGE_DIR = os.path.abspath(os.path.dirname(__file__))
PROJECT_ROOT = os.path.dirname(PACKAGE_DIR)
STORAGE_DIR = os.environ.get("REELFORGE_STORAGE_DIR", os.path.join(PROJECT_ROOT, "storage"))
WORKFLOWS_DIR = os.environ.get("REELFORGE_WORKFLOWS_DIR", os.path.join(PACKAGE_DIR, "workflows"))
LOG_FILE = os.environ.get("REELFORGE_LOG_FILE", "reelforge.log")

# Database
DATABASE_URL = os.environ.get(
    "REELFORGE_DATABASE_URL",
    f"sqlite:///{os.path.join(PROJECT_ROOT, 'reelforge.db')}"
)

# ── Rendering Backend (ComfyUI) ───────────────────────────────────
COMFYUI_BASE_URL = os.environ.get("COMFYUI_BASE_URL", "http://localhost:8188")
COMFYUI_TIMEOUT = int(os.environ.get("COMFYUI_TIMEOUT", "300"))  # seconds, per HTTP call
# Root under which backend output references ("output/sub/file.png") resolve to files
COMFYUI_OUTPUT_ROOT = os.environ.get("COMFYUI_OUTPUT_ROOT", STORAGE_DIR)

# submit_and_await defaults
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0     # seconds, doubled on every attempt
DEFAULT_POLL_INTERVAL = 2.0   # seconds

# ── Media CLI ─────────────────────────────────────────────────────
FFMPEG_PATH = os.environ.get("FFMPEG_PATH", "ffmpeg")
FFPROBE_PATH = os.environ.get("FFPROBE_PATH", "ffprobe")
LAST_FRAME_OFFSET = 0.1       # seconds before the end; trailing frames are often black

# Timeline export
TRANSITION_DURATION = 1.0     # seconds, when a timeline item names none
EXPORT_FPS = 24
BGM_VOLUME = 0.3              # background music under the voiceover

# Similarity thresholds. SSIM and PSNR scores are not on the same scale.
SSIM_MATCH_THRESHOLD = 0.85
PSNR_MATCH_THRESHOLD = 0.75
PSNR_NORMALIZER_DB = 40.0

# ── Continuity ────────────────────────────────────────────────────
KEYFRAME_CONTINUITY_STRENGTH = 0.7
CLIP_CONTINUITY_STRENGTH = 1.0

# ── Generation Defaults ───────────────────────────────────────────
KEYFRAME_CANDIDATES = 4
MAX_SEED = 2147483647

KEYFRAME_DEFAULTS = {
    "steps": 30,
    "cfg": 7.5,
    "sampler": "dpmpp_2m",
    "width": 1024,
    "height": 1024,
}

# Per-mode fallbacks when the workflow declares no default
CLIP_MODE_DEFAULTS = {
    "demo": {"duration": 2.0, "fps": 8, "width": 512, "height": 512, "steps": 10, "guidance": 2.0, "cfg": 7.0},
    "production": {"duration": 5.0, "fps": 24, "width": 1024, "height": 1024, "steps": 25, "guidance": 3.0, "cfg": 7.5},
}

DEFAULT_PROMPT_KEYFRAME = "a cinematic scene"
DEFAULT_PROMPT_CLIP = "A cinematic video clip"

# ── LLM Configuration ─────────────────────────────────────────────
LLM_API_URL = os.environ.get("LLM_API_URL", "https://api.poe.com/v1/chat/completions")
LLM_API_KEY = os.environ.get("LLM_API_KEY", "")
LLM_MODEL = os.environ.get("LLM_MODEL", "gpt-5.1")
LLM_TIMEOUT = int(os.environ.get("LLM_TIMEOUT", "60"))
LLM_MAX_RETRIES = 3
LLM_RETRY_DELAY = 1.0         # seconds
NARRATION_WORDS_PER_SECOND = 2.5
