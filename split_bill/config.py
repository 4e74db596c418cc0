# split_bill/config.py
import os
from typing import Optional, Tuple

from dotenv import load_dotenv

# Load environment variables first
dotenv_path = os.path.join(os.path.dirname(__file__), '../.env')
load_dotenv(dotenv_path)

DEFAULT_MAX_PEOPLE = 20
DEFAULT_MAX_ITEM_QUANTITY = 50
DEFAULT_MAX_BILLS = 1000
DEFAULT_MAX_IMAGE_SIZE_MB = 2
DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_api_key() -> Optional[str]:
    return os.getenv("API_KEY")


def get_max_people() -> int:
    return max(0, _int_env("MAX_PEOPLE", DEFAULT_MAX_PEOPLE))


def get_max_item_quantity() -> int:
    return max(1, _int_env("MAX_ITEM_QUANTITY", DEFAULT_MAX_ITEM_QUANTITY))


def get_max_bills() -> int:
    return max(1, _int_env("MAX_BILLS", DEFAULT_MAX_BILLS))


def get_max_image_size_bytes() -> int:
    return _int_env("MAX_IMAGE_SIZE_MB", DEFAULT_MAX_IMAGE_SIZE_MB) * 1024 * 1024


def get_gemini_config() -> Tuple[str, str]:
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
    if not GEMINI_API_KEY:
        raise ValueError("GEMINI_API_KEY environment variable not set. This key is required for genai.Client().")
    MODEL_NAME = os.environ.get("GEMINI_MODEL_NAME", DEFAULT_GEMINI_MODEL)
    return GEMINI_API_KEY, MODEL_NAME


def get_minio_config() -> dict:
    return {
        "endpoint": os.environ.get("MINIO_ENDPOINT", "localhost:9000"),
        "access_key": os.environ.get("MINIO_ACCESS_KEY"),
        "secret_key": os.environ.get("MINIO_SECRET_KEY"),
        "bucket_name": os.environ.get("MINIO_BUCKET_NAME", "split-bill"),
        "secure": os.environ.get("MINIO_USE_SSL", "False").lower() == "true",
    }
