# split_bill/api.py
import io
import threading
import uuid
from collections import OrderedDict
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from PIL import Image as PILImage, UnidentifiedImageError
from pydantic import BaseModel

from . import config, gemini_ocr, minio_utils, suggestions, workflows
from .models import BillState
from .split_logic import calculate_split, summary_for_display
from .store import BillStore, Command

security_scheme = HTTPBearer()


async def get_api_key(credentials: HTTPAuthorizationCredentials = Depends(security_scheme)):
    # Expecting a Bearer token that matches the API_KEY
    api_key = config.get_api_key()
    if not api_key:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="API_KEY is not configured on the server.")
    if credentials.scheme != "Bearer" or credentials.credentials != api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API Key",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


def get_extractor():
    return gemini_ocr.extract_bill_items


def get_suggester():
    return suggestions.suggest_assignments


class BillRegistry:
    """Independent bills kept in memory, keyed by bill id. The least recently used bill is evicted when full."""

    def __init__(self, max_bills: Optional[int] = None):
        self.max_bills = max_bills if max_bills is not None else config.get_max_bills()
        self._bills: "OrderedDict[str, BillStore]" = OrderedDict()
        self._lock = threading.Lock()

    def create(self) -> str:
        bill_id = uuid.uuid4().hex[:12]
        with self._lock:
            self._bills[bill_id] = BillStore()
            while len(self._bills) > self.max_bills:
                evicted_id, _ = self._bills.popitem(last=False)
                logger.info(f"Evicted bill {evicted_id}")
        return bill_id

    def get(self, bill_id: str) -> Optional[BillStore]:
        with self._lock:
            store = self._bills.get(bill_id)
            if store is not None:
                self._bills.move_to_end(bill_id)
            return store

    def delete(self, bill_id: str) -> bool:
        with self._lock:
            return self._bills.pop(bill_id, None) is not None


def get_store(bill_id: str, request: Request) -> BillStore:
    store = request.app.state.bills.get(bill_id)
    if store is None:
        raise HTTPException(status_code=404, detail=f"Bill '{bill_id}' not found.")
    return store


# Pydantic models for request/response bodies
class CommandRequest(BaseModel):
    version: int = 1
    command: Command


class BillResponse(BaseModel):
    bill_id: str
    state: BillState
    summary: Dict[str, Any]


class SavedListResponse(BaseModel):
    list_name: str
    saved: bool


def bill_response(bill_id: str, state: BillState) -> BillResponse:
    return BillResponse(bill_id=bill_id, state=state, summary=summary_for_display(calculate_split(state)))


def compress_image(image_bytes: bytes, target_size_bytes: int, quality: int = 90, min_quality: int = 70) -> bytes:
    try:
        img = PILImage.open(io.BytesIO(image_bytes))
        if img.mode not in ('RGB', 'L'): img = img.convert('RGB')
        compressed_bytes = b""
        for q in range(quality, min_quality - 1, -5):
            buffer = io.BytesIO(); img.save(buffer, format="JPEG", quality=q, optimize=True)
            compressed_bytes = buffer.getvalue()
            if len(compressed_bytes) <= target_size_bytes:
                logger.info(f"Image compressed to {len(compressed_bytes)/1024:.2f} KB with quality {q}.")
                return compressed_bytes
        ratio = (target_size_bytes / len(compressed_bytes))**0.5
        new_width = int(img.width * ratio); new_height = int(img.height * ratio)
        if new_width > 0 and new_height > 0:
            img_resized = img.resize((new_width, new_height), PILImage.Resampling.LANCZOS)
            buffer = io.BytesIO(); img_resized.save(buffer, format="JPEG", quality=min_quality, optimize=True)
            compressed_bytes = buffer.getvalue()
            logger.info(f"Resized/compressed image size: {len(compressed_bytes)/1024:.2f} KB.")
        return compressed_bytes
    except UnidentifiedImageError: raise HTTPException(status_code=400, detail="Cannot identify image file.")
    except OSError as e: raise HTTPException(status_code=400, detail=f"Image compression error: {e}")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Bill Splitter API",
        description="API for scanning bills, assigning items to people and calculating everyone's share.",
        version="1.0.0",
    )
    app.state.bills = BillRegistry()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def read_root():
        return {"message": "Bill Splitter API is running"}

    @app.post("/bills", response_model=BillResponse, status_code=201)
    async def create_bill(request: Request, api_key: str = Depends(get_api_key)):
        bill_id = request.app.state.bills.create()
        logger.info(f"Created bill {bill_id}")
        return bill_response(bill_id, request.app.state.bills.get(bill_id).snapshot())

    @app.get("/bills/{bill_id}", response_model=BillResponse)
    async def view_bill(bill_id: str, store: BillStore = Depends(get_store), api_key: str = Depends(get_api_key)):
        return bill_response(bill_id, store.snapshot())

    @app.delete("/bills/{bill_id}", status_code=204)
    async def delete_bill(bill_id: str, request: Request, api_key: str = Depends(get_api_key)):
        if not request.app.state.bills.delete(bill_id):
            raise HTTPException(status_code=404, detail=f"Bill '{bill_id}' not found.")

    @app.post("/bills/{bill_id}/commands", response_model=BillResponse)
    async def dispatch_command(bill_id: str, body: CommandRequest, store: BillStore = Depends(get_store),
                               api_key: str = Depends(get_api_key)):
        return bill_response(bill_id, store.dispatch(body.command))

    @app.post("/bills/{bill_id}/upload-receipt", response_model=BillResponse)
    async def upload_receipt(bill_id: str, file: UploadFile = File(...), store: BillStore = Depends(get_store),
                             extractor=Depends(get_extractor), api_key: str = Depends(get_api_key)):
        max_bytes = config.get_max_image_size_bytes()
        raw_image_bytes = await file.read()
        if len(raw_image_bytes) > max_bytes:
            raise HTTPException(status_code=400, detail=f"Image too large ({len(raw_image_bytes) / (1024*1024):.2f} MB). Max {max_bytes // (1024*1024)} MB.")
        processed_image_bytes = compress_image(raw_image_bytes, max_bytes)
        state = await run_in_threadpool(workflows.scan_receipt, store, processed_image_bytes, extractor)
        return bill_response(bill_id, state)

    @app.post("/bills/{bill_id}/suggest-assignments", response_model=BillResponse)
    async def suggest_item_assignments(bill_id: str, store: BillStore = Depends(get_store),
                                       suggester=Depends(get_suggester), api_key: str = Depends(get_api_key)):
        state = await run_in_threadpool(workflows.suggest_for_unassigned, store, suggester)
        return bill_response(bill_id, state)

    @app.post("/bills/{bill_id}/saved-lists/{list_name}", response_model=SavedListResponse)
    async def save_saved_lists(bill_id: str, list_name: str, store: BillStore = Depends(get_store),
                               api_key: str = Depends(get_api_key)):
        saved = await run_in_threadpool(workflows.save_lists, store, list_name)
        if not saved:
            raise HTTPException(status_code=503, detail="Could not save people to storage.")
        return SavedListResponse(list_name=list_name, saved=True)

    @app.post("/bills/{bill_id}/saved-lists/{list_name}/load", response_model=BillResponse)
    async def load_saved_lists(bill_id: str, list_name: str, store: BillStore = Depends(get_store),
                               api_key: str = Depends(get_api_key)):
        state = await run_in_threadpool(workflows.restore_saved_lists, store, list_name)
        return bill_response(bill_id, state)

    @app.delete("/saved-lists/{list_name}", status_code=204)
    async def delete_saved_lists(list_name: str, api_key: str = Depends(get_api_key)):
        await run_in_threadpool(minio_utils.delete_saved_lists, list_name)

    return app


app = create_app()
