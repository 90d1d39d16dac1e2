"""
Configuration management for the audio processing pipeline.
"""

import tempfile
from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import Field
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # External tools
    ffmpeg_path: str = Field(default="ffmpeg", description="Transcoder executable")
    ffprobe_path: str = Field(default="ffprobe", description="Media probe executable")
    ytdlp_path: str = Field(default="yt-dlp", description="Downloader executable")

    # Scratch space
    temp_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "audio-pipeline")

    # Job lifecycle
    job_timeout_seconds: int = Field(default=3600, ge=1, description="Hard limit for one job")
    job_timeout_margin_seconds: int = Field(default=30, ge=0, description="Headroom kept below the hard limit")
    document_poll_attempts: int = Field(default=3, ge=1, le=10)
    document_poll_interval: float = Field(default=5.0, ge=0.0, description="Seconds between existence checks")
    terminate_timeout_seconds: float = Field(default=5.0, gt=0.0, description="Grace period before SIGKILL")

    # Progress reporting
    download_band_end_percent: int = Field(default=2, ge=0, le=98)
    final_band_start_percent: int = Field(default=98, ge=0, le=100)
    acquisition_speed_ratio: float = Field(
        default=5.0,
        gt=0.0,
        description="Hand-tuned estimate of how many times faster acquisition runs than transcoding",
    )
    section_duration_tolerance_seconds: float = Field(default=2.0, ge=0.0)

    # Transcoder settings
    audio_filter_chain: str = Field(
        default="dynaudnorm=g=21:m=40:c=1:b=0,afftdn,pan=stereo|c0<c0+c1|c1<c0+c1,loudnorm=I=-16:LRA=11:TP=-1.5",
        description="Normalization, noise reduction and stereo balancing filters",
    )
    audio_codec: str = Field(default="libmp3lame", description="Audio codec")
    audio_bitrate: str = Field(default="128k", description="Audio bitrate")
    audio_channels: int = Field(default=2, ge=1)
    audio_sample_rate: int = Field(default=44100, description="Audio sample rate in Hz")
    output_format: str = Field(default="mp3", description="Container passed to -f")
    fatal_diagnostic_patterns: List[str] = Field(default=["Output file is empty"])

    # Downloader settings
    ytdlp_format: str = Field(default="bestaudio", description="yt-dlp format selector")
    ytdlp_concurrent_fragments: int = Field(default=4, ge=1, le=16)
    downloader_fatal_patterns: List[str] = Field(default=["ERROR"])
    ytdlp_cookies_file: Optional[Path] = Field(default=None, description="Netscape cookie file for yt-dlp")
    ytdlp_cookies_base64: Optional[str] = Field(default=None, description="Base64 encoded cookie file contents")

    # Storage layout
    processed_prefix: str = Field(default="processed-sermons")
    intro_outro_prefix: str = Field(default="intro-outro-sermons")
    progress_prefix: str = Field(default="addIntroOutro")

    # Local backends used by the command line entry point
    storage_root: Path = Field(default_factory=lambda: Path("storage"))
    documents_root: Path = Field(default_factory=lambda: Path("documents"))
    progress_file: Path = Field(default_factory=lambda: Path("progress.json"))

    logs_dir: Optional[Path] = Field(default=None, description="Directory for persistent log files")

    # HTTP settings
    http_timeout: int = Field(default=600, description="Clip download timeout in seconds")

    # Logging settings
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @property
    def job_deadline_seconds(self) -> int:
        """Seconds a job may run before it is cancelled."""
        return max(1, self.job_timeout_seconds - self.job_timeout_margin_seconds)


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings
