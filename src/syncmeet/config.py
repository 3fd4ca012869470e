"""Configuration module for SyncMeet.

This module loads every runtime setting of the signaling server and of the
meeting client from the environment or from an optional config file.

Config discovery:
-----------------
The config file is discovered in the following order: (1) via the
`SYNCMEET_CONFIG_PATH` environment variable, (2) `.syncmeet` in the project
root, (3) `.env` in the project root, (4) fallback to environment variables
only. This allows the server to run from plain environment variables in
containers and CI while still supporting a local file during development.

Pydantic Settings:
------------------
The `Settings` class uses Pydantic's `BaseSettings`. Extra environment
variables are allowed so unrelated deployment variables never break startup.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class and document them inline.
- If you change the config discovery logic, update this docstring.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
SYNCMEET_FILENAME: str = ".syncmeet"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "SYNCMEET_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parents[2]

ICE_TRANSPORT_POLICIES = ("all", "relay")
BUNDLE_POLICIES = ("balanced", "max-compat", "max-bundle")
RTCP_MUX_POLICIES = ("require", "negotiate")


# --- Config file discovery (no logging) ---
def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable SYNCMEET_CONFIG_PATH
    2. .syncmeet in project root
    3. .env in project root
    4. None (fallback to environment variables only)

    Returns:
        Optional[str]: Path to config file, or None if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    syncmeet_path: Path = PROJECT_ROOT / SYNCMEET_FILENAME
    if syncmeet_path.exists():
        return str(syncmeet_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings with environment variable support.
    All fields are loaded from the environment or the .syncmeet/.env file.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",  # Allow extra env vars not defined as fields
    )

    # Server configuration
    HOST: str = "127.0.0.1"
    PORT: int = 5000
    DEBUG: bool = True
    APP_NAME: str = "syncmeet"
    ENV: str = "dev"
    CLIENT_URL: str = "*"  # Allowed CORS origins, comma separated

    # Logging configuration
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None  # e.g., "logs/syncmeet.log"
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_COMPRESS: bool = True

    # WebRTC ICE configuration
    WEBRTC_STUN_URLS: str = "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302"
    WEBRTC_TURN_URLS: Optional[str] = None  # e.g., "turn:turn.example.com:3478"
    WEBRTC_TURN_USERNAME: Optional[str] = None  # TURN server username
    WEBRTC_TURN_CREDENTIAL: Optional[SecretStr] = None  # TURN server password
    WEBRTC_ICE_TRANSPORT_POLICY: str = "all"  # all, relay (force TURN)
    WEBRTC_BUNDLE_POLICY: str = "balanced"  # balanced, max-compat, max-bundle
    WEBRTC_RTCP_MUX_POLICY: str = "require"  # require, negotiate

    # Signaling server behaviour
    SIGNALING_HONOR_HOST_CLAIMS: bool = True  # Room creators skip the approval queue
    SIGNALING_JOIN_REQUEST_TIMEOUT: Optional[float] = None  # Seconds; unset waits forever
    SIGNALING_RATE_LIMIT_ENABLED: bool = True

    # Meeting client
    SIGNALING_SERVER_URL: str = "ws://localhost:5000/signaling/ws"
    REACTION_TTL_SECONDS: float = 4.0
    CLIENT_NEGOTIATION_TIMEOUT: Optional[float] = None  # Seconds; unset waits forever

    # Local media devices (aiortc MediaPlayer / FFmpeg inputs)
    MEDIA_CAMERA_DEVICE: str = "/dev/video0"
    MEDIA_CAMERA_FORMAT: Optional[str] = "v4l2"
    MEDIA_MICROPHONE_DEVICE: str = "default"
    MEDIA_MICROPHONE_FORMAT: Optional[str] = "pulse"
    MEDIA_DISPLAY_DEVICE: str = ":0.0"
    MEDIA_DISPLAY_FORMAT: Optional[str] = "x11grab"
    MEDIA_VIDEO_SIZE: str = "640x480"

    @field_validator("WEBRTC_ICE_TRANSPORT_POLICY", mode="before")
    @classmethod
    def validate_ice_transport_policy(cls, v):
        """Only policies understood by RTCConfiguration are accepted."""
        if v not in ICE_TRANSPORT_POLICIES:
            raise ValueError(f"WEBRTC_ICE_TRANSPORT_POLICY must be one of {ICE_TRANSPORT_POLICIES}")
        return v

    @field_validator("WEBRTC_BUNDLE_POLICY", mode="before")
    @classmethod
    def validate_bundle_policy(cls, v):
        if v not in BUNDLE_POLICIES:
            raise ValueError(f"WEBRTC_BUNDLE_POLICY must be one of {BUNDLE_POLICIES}")
        return v

    @field_validator("WEBRTC_RTCP_MUX_POLICY", mode="before")
    @classmethod
    def validate_rtcp_mux_policy(cls, v):
        if v not in RTCP_MUX_POLICIES:
            raise ValueError(f"WEBRTC_RTCP_MUX_POLICY must be one of {RTCP_MUX_POLICIES}")
        return v

    @field_validator(
        "SIGNALING_JOIN_REQUEST_TIMEOUT", "CLIENT_NEGOTIATION_TIMEOUT", "REACTION_TTL_SECONDS", mode="before"
    )
    @classmethod
    def validate_positive_durations(cls, v, info):
        """Validate that durations are positive when set."""
        if v is None or v == "":
            if info.field_name == "REACTION_TTL_SECONDS":
                raise ValueError("REACTION_TTL_SECONDS must be set")
            return None
        value = float(v)
        if value <= 0:
            raise ValueError(f"{info.field_name} must be a positive number of seconds")
        return value

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return not self.DEBUG

    @property
    def cors_origins_list(self) -> List[str]:
        """Get list of allowed CORS origins."""
        return _split_csv(self.CLIENT_URL) or ["*"]

    @property
    def stun_urls_list(self) -> List[str]:
        """Get list of configured STUN server URLs."""
        return _split_csv(self.WEBRTC_STUN_URLS)

    @property
    def turn_urls_list(self) -> List[str]:
        """Get list of configured TURN server URLs."""
        return _split_csv(self.WEBRTC_TURN_URLS)


# Global settings instance
settings: Settings = Settings()
