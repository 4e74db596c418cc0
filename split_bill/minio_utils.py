# split_bill/minio_utils.py
import io
import json
from typing import Any, List, Optional

from loguru import logger
from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from . import config

# Raised when the MinIO server cannot be reached
CONNECTION_ERRORS = (HTTPError, OSError)

# Define prefixes (folders) within the bucket
PEOPLE_PREFIX = "people/"
POOLS_PREFIX = "custom-pools/"

minio_client_instance = None


def get_minio_client() -> Optional[Minio]:
    global minio_client_instance
    if minio_client_instance is None:
        settings = config.get_minio_config()
        if not all([settings["endpoint"], settings["access_key"], settings["secret_key"], settings["bucket_name"]]):
            logger.error("MinIO environment variables not fully set. Cannot initialize client.")
            return None
        try:
            logger.info(f"Initializing MinIO client for endpoint: {settings['endpoint']}, SSL: {settings['secure']}")
            client = Minio(
                settings["endpoint"],
                access_key=settings["access_key"],
                secret_key=settings["secret_key"],
                secure=settings["secure"]
            )
            if not client.bucket_exists(settings["bucket_name"]):
                logger.warning(f"MinIO bucket '{settings['bucket_name']}' does not exist. Attempting to create it.")
                client.make_bucket(settings["bucket_name"])
            minio_client_instance = client
        except S3Error as exc:
            logger.error(f"S3Error initializing MinIO client: {exc}")
            minio_client_instance = None
        except CONNECTION_ERRORS as exc:
            logger.error(f"Could not reach MinIO at {settings['endpoint']}: {exc}")
            minio_client_instance = None
    return minio_client_instance


def _bucket() -> str:
    return config.get_minio_config()["bucket_name"]


def upload_json(payload: Any, object_name_with_prefix: str) -> Optional[str]:
    """Serialize payload to JSON and store it. Returns the object name on success."""
    client = get_minio_client()
    if not client:
        return None
    try:
        json_bytes = json.dumps(payload, indent=2).encode('utf-8')
        client.put_object(
            _bucket(),
            object_name_with_prefix,
            io.BytesIO(json_bytes),
            length=len(json_bytes),
            content_type='application/json'
        )
        logger.info(f"Uploaded {object_name_with_prefix} to MinIO bucket {_bucket()}.")
        return object_name_with_prefix
    except TypeError as e:
        logger.error(f"Error serializing '{object_name_with_prefix}' to JSON: {e}")
        return None
    except S3Error as exc:
        logger.error(f"Error uploading '{object_name_with_prefix}' to MinIO: {exc}")
        return None
    except CONNECTION_ERRORS as exc:
        logger.error(f"Could not reach MinIO to upload '{object_name_with_prefix}': {exc}")
        return None


def get_json(object_name_with_prefix: str) -> Optional[Any]:
    """Fetch and decode a JSON object; None when missing or unreadable."""
    client = get_minio_client()
    if not client:
        return None
    try:
        response = client.get_object(_bucket(), object_name_with_prefix)
        try:
            data_bytes = response.read()
        finally:
            response.close()
            response.release_conn()
    except S3Error as exc:
        if exc.code == "NoSuchKey":
            logger.info(f"Object '{object_name_with_prefix}' not found in MinIO bucket '{_bucket()}'.")
        else:
            logger.error(f"S3Error getting object '{object_name_with_prefix}' from MinIO: {exc}")
        return None
    except CONNECTION_ERRORS as exc:
        logger.error(f"Could not reach MinIO to read '{object_name_with_prefix}': {exc}")
        return None
    try:
        return json.loads(data_bytes.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Discarding unreadable JSON in '{object_name_with_prefix}': {e}")
        return None


def delete_object(object_name_with_prefix: str) -> bool:
    client = get_minio_client()
    if not client:
        return False
    try:
        client.remove_object(_bucket(), object_name_with_prefix)
        return True
    except S3Error as exc:
        logger.error(f"Error removing '{object_name_with_prefix}' from MinIO: {exc}")
        return False
    except CONNECTION_ERRORS as exc:
        logger.error(f"Could not reach MinIO to remove '{object_name_with_prefix}': {exc}")
        return False


# --- Saved list wrappers ---
def save_people_list(people: List[dict], list_name: str) -> Optional[str]:
    return upload_json(people, f"{PEOPLE_PREFIX}{list_name}.json")


def load_people_list(list_name: str) -> Optional[Any]:
    return get_json(f"{PEOPLE_PREFIX}{list_name}.json")


def save_custom_pools(pools: List[dict], list_name: str) -> Optional[str]:
    return upload_json(pools, f"{POOLS_PREFIX}{list_name}.json")


def load_custom_pools(list_name: str) -> Optional[Any]:
    return get_json(f"{POOLS_PREFIX}{list_name}.json")


def delete_saved_lists(list_name: str) -> bool:
    people_removed = delete_object(f"{PEOPLE_PREFIX}{list_name}.json")
    pools_removed = delete_object(f"{POOLS_PREFIX}{list_name}.json")
    return people_removed and pools_removed
