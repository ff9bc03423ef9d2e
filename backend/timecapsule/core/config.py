from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "timecapsule"
    app_env: str = "development"
    log_level: str = "INFO"
    log_dir: str = "logs"
    allowed_origins: str = ""

    database_url: str = "sqlite:///./data/capsules.db"

    # Identity (tokens are issued elsewhere, we only read the subject)
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str | None = None
    JWT_AUDIENCE: str | None = None
    DEV_FAKE_OWNER_ID: str | None = None

    # Argon2 parameters for capsule passphrases
    passphrase_time_cost: int = 2
    passphrase_memory_cost: int = 102400  # ~100 MB
    passphrase_parallelism: int = 8
    passphrase_hash_len: int = 32
    passphrase_salt_len: int = 16
    passphrase_min_length: int = 6
    passphrase_max_length: int = 128

    # Unlock throttling
    unlock_throttle_enabled: bool = True
    unlock_max_attempts: int = 5
    unlock_base_delay: float = 2.0
    unlock_max_delay: float = 300.0

    # Capsule field limits
    title_max_length: int = 120
    message_max_length: int = 2000
    author_max_length: int = 80
    max_attachments: int = 5

    # Backblaze B2
    B2_APPLICATION_KEY_ID: str | None = None
    B2_APPLICATION_KEY: str | None = None
    B2_BUCKET_ID: str | None = None
    B2_BUCKET_NAME: str | None = None
    B2_API_URL: str = "https://api.backblazeb2.com"
    B2_DOWNLOAD_URL: str | None = None
    B2_IMAGE_PREFIX: str = "capsules/images"
    B2_VIDEO_PREFIX: str = "capsules/videos"
    B2_POSTER_PREFIX: str = "capsules/posters"
    b2_auth_cache_seconds: int = 20 * 60
    b2_timeout_seconds: float = 30.0
    b2_target_retries: int = 3
    b2_retry_backoff: float = 0.5

    # Signed downloads
    download_default_seconds: int = 300
    download_min_seconds: int = 60
    download_max_seconds: int = 3600

    # Images
    MEDIA_MAX_IMAGE_BYTES: int = 10 * 1024 * 1024
    MEDIA_MAX_IMAGE_RES: str = "1920x1080"
    MEDIA_IMAGE_QUALITY: int = 70

    # Videos
    MEDIA_MAX_VIDEO_BYTES: int = 100 * 1024 * 1024
    MEDIA_MAX_VIDEO_RES: str = "1280x720"
    MEDIA_VIDEO_MAX_BITRATE: str = "2500k"
    MEDIA_VIDEO_AUDIO_BITRATE: str = "128k"
    MEDIA_VIDEO_PRESET: str = "veryfast"
    MEDIA_TRANSCODE_TIMEOUT: float = 300.0
    MEDIA_PROBE_TIMEOUT: float = 30.0
    MEDIA_POSTER_OFFSET: float = 1.0
    MEDIA_POSTER_RES: str = "320x320"
    MEDIA_SCRATCH_DIR: str | None = None
    MEDIA_MAX_CONCURRENT_TRANSCODES: int = 2
    FFMPEG_BINARY: str = "ffmpeg"
    FFPROBE_BINARY: str = "ffprobe"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def max_image_size(self) -> tuple[int, int]:
        return parse_resolution(self.MEDIA_MAX_IMAGE_RES, (1920, 1080))

    @property
    def max_video_size(self) -> tuple[int, int]:
        return parse_resolution(self.MEDIA_MAX_VIDEO_RES, (1280, 720))

    @property
    def poster_size(self) -> tuple[int, int]:
        return parse_resolution(self.MEDIA_POSTER_RES, (320, 320))

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


def parse_resolution(value: str, default: tuple[int, int]) -> tuple[int, int]:
    """Parse ``"WIDTHxHEIGHT"``; each axis falls back to the default when unusable."""
    width_raw, _, height_raw = (value or "").lower().partition("x")
    try:
        width = int(width_raw)
    except ValueError:
        width = 0
    try:
        height = int(height_raw)
    except ValueError:
        height = 0
    return (width if width > 0 else default[0], height if height > 0 else default[1])


settings = Settings()
