import json
import time
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

Limb = Literal["LH", "RH", "LF", "RF"]

TERMINAL_STATES = frozenset(["completed", "failed"])


class PayloadError(ValueError):
    """Render submission rejected before a job exists."""

    def __init__(self, code: str, detail: Optional[str] = None):
        super().__init__(detail or code)
        self.code = code
        self.detail = detail

    def to_body(self) -> dict:
        body = {"error": self.code}
        if self.detail:
            body["detail"] = self.detail
        return body


class HoldEntry(BaseModel):
    id: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None
    nx: Optional[float] = None
    ny: Optional[float] = None
    limb: Optional[Limb] = None

    @model_validator(mode="after")
    def _require_position(self) -> "HoldEntry":
        has_norm = self.nx is not None and self.ny is not None
        has_px = self.x is not None and self.y is not None
        if not (has_norm or has_px):
            raise ValueError("hold needs nx/ny or x/y")
        return self


class JobPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)
    route: List[HoldEntry] = Field(alias="routeJson", min_length=1)
    image_width: int = Field(default=1, alias="imageWidth")
    image_height: int = Field(default=1, alias="imageHeight")
    texture_url: Optional[str] = Field(default=None, alias="textureUrl")
    upload_url: Optional[str] = Field(default=None, alias="uploadUrl")
    # Capture resolution; None falls back to the configured default
    width: Optional[int] = None
    height: Optional[int] = None
    fps: int = 30
    duration_padding: float = Field(default=2.0, alias="durationPadding")

    @field_validator("image_width", "image_height")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(1, v)

    @field_validator("fps", mode="before")
    @classmethod
    def _fps(cls, v):
        if v is None:
            return 30
        return v

    @field_validator("fps")
    @classmethod
    def _fps_floor(cls, v: int) -> int:
        return max(1, v)

    @field_validator("width", "height")
    @classmethod
    def _positive_or_default(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            return None
        return v

    @field_validator("duration_padding")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        return max(0.0, v)

    @field_validator("texture_url", "upload_url")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


def parse_payload(body: bytes) -> JobPayload:
    """Parse a POST /render body, checking fields in the order clients rely on.

    Raises PayloadError with one of: empty-body, invalid-json, missing-job-id,
    missing-route-json, invalid-payload.
    """
    if not body:
        raise PayloadError("empty-body")
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise PayloadError("invalid-json", str(e))
    if not isinstance(data, dict):
        raise PayloadError("invalid-json", "expected a JSON object")

    job_id = data.get("jobId")
    if not isinstance(job_id, str) or not job_id:
        raise PayloadError("missing-job-id")
    route = data.get("routeJson")
    if not isinstance(route, list) or not route:
        raise PayloadError("missing-route-json")

    try:
        return JobPayload.model_validate(data)
    except ValidationError as e:
        detail = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise PayloadError("invalid-payload", detail)


class JobStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    job_id: str = Field(alias="jobId")
    state: Literal["queued", "running", "completed", "failed", "unknown"]
    message: str = ""
    finished_at: int = Field(default=0, alias="finishedAt")

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)

    @classmethod
    def queued(cls, job_id: str) -> "JobStatus":
        return cls(job_id=job_id, state="queued", message="waiting")

    @classmethod
    def running(cls, job_id: str, stage: str) -> "JobStatus":
        return cls(job_id=job_id, state="running", message=stage)

    @classmethod
    def finished(cls, job_id: str, success: bool, message: str) -> "JobStatus":
        return cls(
            job_id=job_id,
            state="completed" if success else "failed",
            message=message,
            finished_at=int(time.time()),
        )

    @classmethod
    def unknown(cls, job_id: Optional[str]) -> "JobStatus":
        return cls(job_id=job_id or "unknown", state="unknown", message="no-such-job")


class RouteMove(BaseModel):
    step: int
    limb: Limb
    hold_idx: int
    hold_id: str
    nx: float
    ny: float


class RouteFile(BaseModel):
    algorithm: str
    total_moves: int
    total_holds: int
    final_height: float
    image_width: int
    image_height: int
    moves: List[RouteMove]
