"""Process-wide worker configuration, read once from the environment."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_REGION = "ap-southeast-2"
DEFAULT_OWNER_PASSWORD = "reallylongandsecurepassword"


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    value = environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class WorkerConfig:
    """Bucket, queue and timing settings shared by every worker component."""

    service_name: str
    pending_bucket: str
    done_bucket: str
    error_bucket: str
    queue_name: str
    region: str = DEFAULT_REGION
    poll_interval: float = 1.0
    office_timeout: float = 3.0
    html_timeout: float = 60.0
    normalize_timeout: float = 30.0
    stitch_timeout: float = 300.0
    stitch_cooldown: float = 60.0
    owner_password: str = DEFAULT_OWNER_PASSWORD
    scratch_dir: Optional[str] = None
    health_port: int = 8081

    @classmethod
    def for_shortcode(cls, shortcode: str, **overrides) -> "WorkerConfig":
        """Derive bucket and queue names from the application short code."""
        return cls(
            service_name=shortcode,
            pending_bucket=f"{shortcode}-pending",
            done_bucket=f"{shortcode}-done",
            error_bucket=f"{shortcode}-error",
            queue_name=shortcode,
            **overrides,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WorkerConfig":
        """Build the configuration from environment variables."""
        environ = os.environ if environ is None else environ
        shortcode = (environ.get("APP_SHORTCODE") or "").strip()
        if not shortcode:
            raise RuntimeError("APP_SHORTCODE is required")
        return cls.for_shortcode(
            shortcode,
            region=environ.get("AWS_REGION") or DEFAULT_REGION,
            poll_interval=_env_float(environ, "FRISKET_POLL_INTERVAL", 1.0),
            office_timeout=_env_float(environ, "FRISKET_OFFICE_TIMEOUT_SECONDS", 3.0),
            html_timeout=_env_float(environ, "FRISKET_HTML_TIMEOUT_SECONDS", 60.0),
            normalize_timeout=_env_float(
                environ, "FRISKET_NORMALIZE_TIMEOUT_SECONDS", 30.0
            ),
            stitch_timeout=_env_float(environ, "FRISKET_STITCH_TIMEOUT_SECONDS", 300.0),
            stitch_cooldown=_env_float(environ, "FRISKET_STITCH_COOLDOWN_SECONDS", 60.0),
            owner_password=environ.get("FRISKET_OWNER_PASSWORD") or DEFAULT_OWNER_PASSWORD,
            scratch_dir=environ.get("FRISKET_SCRATCH_DIR") or None,
            health_port=_env_int(environ, "FRISKET_HEALTH_PORT", 8081),
        )
