import os
import shlex
import tempfile
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str) -> List[str]:
    return [p.strip() for p in os.getenv(name, default).split(",") if p.strip()]


class Settings(BaseModel):
    port: int = Field(default_factory=lambda: int(os.getenv("ROUTECAST_PORT", "8785")))
    hosts: List[str] = Field(
        default_factory=lambda: _env_list("ROUTECAST_HOSTS", "localhost,127.0.0.1")
    )
    # Empty secret disables bearer auth
    shared_secret: str = Field(default_factory=lambda: os.getenv("ROUTECAST_SECRET", ""))
    encoder_cmd: str = Field(default_factory=lambda: os.getenv("ENCODER_CMD", "ffmpeg"))
    encoder_timeout: float = Field(
        default_factory=lambda: float(os.getenv("ENCODER_TIMEOUT", "120"))
    )
    tick_rate: int = Field(default_factory=lambda: int(os.getenv("TICK_RATE", "30")))
    http_timeout: float = Field(
        default_factory=lambda: float(os.getenv("HTTP_TIMEOUT", "30"))
    )
    upload_timeout: float = Field(
        default_factory=lambda: float(os.getenv("UPLOAD_TIMEOUT", "600"))
    )
    output_dir: str = Field(
        default_factory=lambda: os.getenv("OUTPUT_DIR")
        or os.path.join(tempfile.gettempdir(), "routecast")
    )
    keep_outputs: bool = Field(default_factory=lambda: _env_bool("KEEP_OUTPUTS"))
    default_width: int = Field(
        default_factory=lambda: int(os.getenv("DEFAULT_WIDTH", "1920"))
    )
    default_height: int = Field(
        default_factory=lambda: int(os.getenv("DEFAULT_HEIGHT", "1080"))
    )

    def encoder_argv(self) -> List[str]:
        cmd = shlex.split(self.encoder_cmd)
        if not cmd:
            raise ValueError("ENCODER_CMD is empty")
        return cmd
