import os
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from dotenv import load_dotenv

DEFAULT_ALLOWED_IMAGE_TYPES = frozenset(
    {"image/png", "image/jpg", "image/jpeg", "image/gif", "image/webp"}
)


def _int_from_env(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        return int(raw_value)
    except (TypeError, ValueError):
        return default


def _optional_int_from_env(name: str) -> Optional[int]:
    value = _int_from_env(name, 0)
    return value if value > 0 else None


def _bool_from_env(name: str, default: bool) -> bool:
    raw_value = (os.getenv(name) or "").strip().lower()
    if not raw_value:
        return default
    return raw_value in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Runtime configuration handed to every component at construction."""

    mongo_uri: str = "mongodb://localhost:27017/limeshop"
    jwt_secret_key: str = "change-me-in-production"
    jwt_access_token_hours: int = 1

    # Listing
    default_list_limit: int = 10
    own_orders_limit: int = 5
    max_list_limit: Optional[int] = None
    search_max_length: int = 100

    # Uploads
    min_upload_bytes: int = 2 * 1024
    max_upload_bytes: int = 5 * 1024 * 1024
    allowed_image_types: FrozenSet[str] = DEFAULT_ALLOWED_IMAGE_TYPES
    upload_folder: str = "uploads"
    temp_upload_folder: str = os.path.join("uploads", "tmp")

    # Orders
    phone_region: str = "RU"
    address_max_length: int = 200
    comment_max_length: int = 1000
    email_max_length: int = 100
    payment_max_length: int = 50

    # HTTP
    cors_origins: Tuple[str, ...] = ("http://localhost:5173",)
    trusted_proxy_hops: int = 1
    rate_limit_enabled: bool = True
    default_rate_limits: Tuple[str, ...] = ("200 per 15 minutes",)
    list_rate_limit: str = "10 per 10 minutes"
    rate_limit_storage_uri: str = "memory://"

    @property
    def max_content_length(self) -> int:
        # Leave room for the multipart envelope around the file itself.
        return self.max_upload_bytes + 64 * 1024

    @classmethod
    def from_env(cls, root_path: str) -> "Settings":
        load_dotenv()

        upload_folder = (os.getenv("UPLOAD_FOLDER") or "").strip() or os.path.join(
            root_path, "uploads"
        )
        temp_upload_folder = (
            os.getenv("UPLOAD_TEMP_FOLDER") or ""
        ).strip() or os.path.join(upload_folder, "tmp")

        allowed_types = DEFAULT_ALLOWED_IMAGE_TYPES
        allowed_types_raw = os.getenv("ALLOWED_IMAGE_TYPES", "")
        if allowed_types_raw.strip():
            allowed_types = frozenset(
                entry.strip().lower()
                for entry in allowed_types_raw.split(",")
                if entry.strip()
            )

        cors_origins = [
            "http://localhost:5173",
            (os.getenv("FRONTEND_URL") or "").strip(),
        ]
        cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
        if cors_extra:
            for origin in cors_extra.split(","):
                trimmed = origin.strip()
                if trimmed:
                    cors_origins.append(trimmed)

        default_limits = tuple(
            entry.strip()
            for entry in (os.getenv("DEFAULT_RATE_LIMITS") or "200 per 15 minutes").split(";")
            if entry.strip()
        )

        return cls(
            mongo_uri=os.getenv("MONGO_URI", cls.mongo_uri) or cls.mongo_uri,
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", cls.jwt_secret_key)
            or cls.jwt_secret_key,
            default_list_limit=max(1, _int_from_env("LIST_LIMIT", cls.default_list_limit)),
            own_orders_limit=max(1, _int_from_env("OWN_ORDERS_LIMIT", cls.own_orders_limit)),
            max_list_limit=_optional_int_from_env("MAX_LIST_LIMIT"),
            min_upload_bytes=max(0, _int_from_env("MIN_UPLOAD_BYTES", cls.min_upload_bytes)),
            max_upload_bytes=max(1, _int_from_env("MAX_UPLOAD_BYTES", cls.max_upload_bytes)),
            allowed_image_types=allowed_types,
            upload_folder=upload_folder,
            temp_upload_folder=temp_upload_folder,
            phone_region=(os.getenv("PHONE_REGION") or cls.phone_region).strip().upper(),
            cors_origins=tuple(origin for origin in cors_origins if origin),
            trusted_proxy_hops=max(0, _int_from_env("TRUSTED_PROXY_HOPS", 1)),
            rate_limit_enabled=_bool_from_env("RATE_LIMIT_ENABLED", True),
            default_rate_limits=default_limits,
            list_rate_limit=(os.getenv("LIST_RATE_LIMIT") or cls.list_rate_limit).strip(),
            rate_limit_storage_uri=(os.getenv("REDIS_URL") or "memory://").strip(),
        )
