"""Application configuration. Loads from env vars."""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Audio from the media transport: PCM 16-bit mono, 16kHz
    SAMPLE_RATE: int = 16000
    SAMPLE_WIDTH: int = 2  # 16-bit
    CHANNELS: int = 1

    # Rebuffer: fixed frames for the streaming STT socket (100ms @ 16kHz = 3200 bytes)
    TARGET_FRAME_MS: int = 100
    # Remainder shorter than this is discarded on flush
    MIN_FLUSH_MS: int = 50

    # Streaming STT backend
    TRANSCRIPTION_BACKEND: Literal["assemblyai"] = "assemblyai"
    ASSEMBLYAI_API_KEY: str = ""
    ASSEMBLYAI_STREAMING_URL: str = "wss://streaming.assemblyai.com/v3/ws"
    ASSEMBLYAI_FORMAT_TURNS: bool = True
    # close(): max wait for the remote side after Terminate
    TRANSCRIPTION_CLOSE_TIMEOUT_SEC: float = 1.0

    # Extraction model (Anthropic Messages API, tool use)
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_BASE_URL: str = "https://api.anthropic.com"
    ANTHROPIC_VERSION: str = "2023-06-01"
    EXTRACTION_MODEL: str = "claude-sonnet-4-5"
    EXTRACTION_MAX_TOKENS: int = 1024
    EXTRACTION_TIMEOUT_SEC: float = 30.0
    EXTRACTION_MAX_TOOL_ROUNDS: int = 10
    # Conversation context: whole entries kept after pruning
    EXTRACTION_CONTEXT_MAX_ENTRIES: int = 40
    # Plain user turns kept when the context is reset after a pairing error
    EXTRACTION_RECOVERY_KEEP_TURNS: int = 5
    # Free-text context appended to the extraction instruction (e.g. firm / product)
    EXTRACTION_CALL_CONTEXT: str = ""

    # Qualification framework: faint = financial consultation, bant = sales call
    QUALIFICATION_FRAMEWORK: Literal["faint", "bant"] = "faint"

    # Speaker roles (display labels for RoleA / RoleB)
    ROLE_A_LABEL: str = "Consultant"
    ROLE_B_LABEL: str = "Client"

    # Session state + final reports (one JSON per session)
    SESSION_LOG_DIR: str = "./consultation_logs"
    # Restore an unfinalized record from SESSION_LOG_DIR when the same meeting starts again
    RESUME_PERSISTED_SESSIONS: bool = False

    # Dashboard: recent final turns returned by /api/transcript
    RECENT_TRANSCRIPT_LIMIT: int = 50

    # Stop: max wait for queued turns to finish extraction
    MEETING_DRAIN_TIMEOUT_SEC: float = 30.0
    # Stopped meetings whose last snapshot stays readable (oldest dropped first)
    FINISHED_MEETINGS_KEEP: int = 50

    # Session transcript storage: one .txt per meeting, append-only (final turns only).
    TRANSCRIPT_SAVE_ENABLED: bool = True
    TRANSCRIPT_DIR: str = "./transcripts"
    TRANSCRIPT_ADD_TIMESTAMPS: bool = False  # prefix each line with [MM:SS.ss]

    # Optional raw audio backup (per meeting → one WAV). Disabled by default.
    ENABLE_BACKEND_RECORDING: bool = False
    BACKEND_RECORD_DIR: str = "./recordings"
    # After stop, the saved WAV is transcribed by AssemblyAI's pre-recorded API (recording enabled only)
    BATCH_TRANSCRIPTION_ENABLED: bool = True
    ASSEMBLYAI_BASE_URL: str = "https://api.assemblyai.com"
    BATCH_TRANSCRIPTION_POLL_SEC: float = 3.0
    BATCH_TRANSCRIPTION_TIMEOUT_SEC: float = 300.0

    # Zoom RTMS: webhook validation + stream signature
    ZOOM_SECRET_TOKEN: str = ""
    ZM_CLIENT_ID: str = ""
    ZM_CLIENT_SECRET: str = ""

    # HTTP server
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path = also write to file (empty = console only).
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()
