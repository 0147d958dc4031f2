"""
Shared constants for ULTRANSC.
Single source of truth — imported by every other module.
"""

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "ULTRANSC"
APP_VERSION = "0.5.0"

# ── Installation layout (relative to the run root) ───────────────────
QUEUE_DIRNAME = "queue"
INCOMING_DIRNAME = "incoming"
PROCESSING_DIRNAME = "processing"
DONE_DIRNAME = "done"
LINKS_FILENAME = "links.txt"
LINKS_FAILED_FILENAME = "links.failed.txt"
WORKSPACE_DIRNAME = "workspace"
MODELS_DIRNAME = "models"
BIN_DIRNAME = "bin"
LOG_DIRNAME = "logs"
BLOCKS_DIRNAME = "blocks"
CONFIG_DIRNAME = "config"
CONFIG_FILENAME = "default.json"
MODEL_LIST_FILENAME = "list.json"

SYSTEM_LOG_NAME = "system.log"
ERROR_LOG_NAME = "errors.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# ── Job workspace layout ──────────────────────────────────────────────
STATE_FILENAME = "state.json"
JOB_LOG_NAME = "job.log"
RAW_INPUT_STEM = "raw_input"
AUDIO_FILENAME = "audio.wav"
CHUNKS_DIRNAME = "chunks"
CHUNK_MANIFEST_NAME = "manifest.json"
TRANSCRIPT_PREFIX = "transcript"
SEGMENTS_ALIAS_NAME = "segments.json"
FAILED_SUFFIX = ".failed"

STATE_SCHEMA_VERSION = 1

# ── Job stage values (ordered) ────────────────────────────────────────
class JobStage:
    DISCOVERED = "discovered"
    INPUT_COPIED = "input_copied"
    CONVERTING = "converting"
    AUDIO_READY = "audio_ready"
    CHUNKING = "chunking"
    CHUNKED = "chunked"
    TRANSCRIBING_CHUNKS = "transcribing_chunks"
    STITCHING = "stitching"
    TRANSCRIBING = "transcribing"
    COMPLETE = "complete"
    FAILED = "failed"

# ── Chunk status ──────────────────────────────────────────────────────
class ChunkStatus:
    PENDING = "pending"
    TRANSCRIBED = "transcribed"

# ── Source categories ─────────────────────────────────────────────────
class SourceCategory:
    LOCAL = "local"
    URLS = "urls"

DEFAULT_SOURCE_PRIORITY = [SourceCategory.LOCAL, SourceCategory.URLS]

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    DURATION_LIMIT = "ERR_DURATION_LIMIT"
    NO_CHUNKS = "ERR_NO_CHUNKS"
    SOURCE_MISSING = "ERR_SOURCE_MISSING"

    # Retryable
    COPY_FAILED = "ERR_COPY_FAILED"
    CONVERT_FAILED = "ERR_CONVERT_FAILED"
    CONVERT_TIMEOUT = "ERR_CONVERT_TIMEOUT"
    PROBE_FAILED = "ERR_PROBE_FAILED"
    CHUNKING = "ERR_CHUNKING"
    TRANSCRIBE_FAILED = "ERR_TRANSCRIBE_FAILED"
    TRANSCRIBE_TIMEOUT = "ERR_TRANSCRIBE_TIMEOUT"
    CHUNK_OUTPUT_MISSING = "ERR_CHUNK_OUTPUT_MISSING"
    STITCH_FAILED = "ERR_STITCH_FAILED"
    SWAP_PRESSURE = "ERR_SWAP_PRESSURE"
    UNEXPECTED = "ERR_UNEXPECTED"

    # Unit / run level
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    DISK_SPACE = "ERR_DISK_SPACE"
    MISSING_TOOL = "ERR_MISSING_TOOL"
    UNSUPPORTED_HOST = "ERR_UNSUPPORTED_HOST"
    NOT_WRITABLE = "ERR_NOT_WRITABLE"
    NO_MODEL = "ERR_NO_MODEL"

RETRYABLE_ERRORS = {
    ErrorCode.COPY_FAILED,
    ErrorCode.CONVERT_FAILED,
    ErrorCode.CONVERT_TIMEOUT,
    ErrorCode.PROBE_FAILED,
    ErrorCode.CHUNKING,
    ErrorCode.TRANSCRIBE_FAILED,
    ErrorCode.TRANSCRIBE_TIMEOUT,
    ErrorCode.CHUNK_OUTPUT_MISSING,
    ErrorCode.STITCH_FAILED,
    ErrorCode.SWAP_PRESSURE,
    ErrorCode.UNEXPECTED,
}

# ── Audio pipeline defaults ───────────────────────────────────────────
CHUNK_THRESHOLD_SEC = 1800     # 30 minutes
CHUNK_DURATION_SEC = 900       # 15 minutes
MAX_DURATION_SEC = 10800       # 3 hours, single-pass gate

# Normalization target (whisper.cpp wants 16 kHz mono s16le)
NORM_CHANNELS = 1
NORM_SAMPLE_RATE = 16000
NORM_CODEC = "pcm_s16le"

# ── Backpressure defaults ─────────────────────────────────────────────
MIN_FREE_RAM_MB = 1024
MAX_SWAP_USED_MB = 2048
RAM_POLL_INTERVAL_SEC = 10
MIN_FREE_DISK_GB = 2
LOW_TOTAL_RAM_GB = 4

# ── Retry defaults ────────────────────────────────────────────────────
MAX_RETRIES = 3
RETRY_BASE_DELAY_SEC = 5
RETRY_MULTIPLIER = 2

# ── Collaborator timeouts (seconds) ───────────────────────────────────
CONVERT_TIMEOUT_SEC = 3600
CHUNK_CUT_TIMEOUT_SEC = 300
PROBE_TIMEOUT_SEC = 30
TRANSCRIBE_TIMEOUT_SEC = 14400
DOWNLOAD_TIMEOUT_SEC = 3600

# ── Collaborator binaries ─────────────────────────────────────────────
FFMPEG_BIN = "ffmpeg"
FFPROBE_BIN = "ffprobe"
WHISPER_BIN = "whisper-cli"
YTDLP_BIN = "yt-dlp"
REQUIRED_TOOLS = [FFMPEG_BIN, FFPROBE_BIN, WHISPER_BIN]
SUPPORTED_OS = ("Darwin", "Linux")

YTDLP_RELEASE_URL = "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp"
MODEL_BASE_URL = "https://huggingface.co/ggerganov/whisper.cpp/resolve/main"
FETCH_TIMEOUT_SEC = 60

# ── Models ────────────────────────────────────────────────────────────
MODEL_AUTO = "auto"
MODEL_MEDIUM = "ggml-medium.en.bin"
MODEL_SMALL = "ggml-small.en.bin"
DEFAULT_MODEL = MODEL_MEDIUM
MEDIUM_MIN_RAM_GB = 8
LONG_INPUT_MIN_RAM_GB = 16
LONG_INPUT_SEC = 7200

# ── Keyword blocks ────────────────────────────────────────────────────
BLOCK_CONTEXT_BEFORE = 5
BLOCK_CONTEXT_AFTER = 5
BLOCK_SIMILARITY_THRESHOLD = 0.8

# ── Misc ──────────────────────────────────────────────────────────────
# Characters forbidden in folder names
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_FOLDER_NAME_LEN = 120
