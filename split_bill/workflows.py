# split_bill/workflows.py
"""
Glue between the bill store and its collaborators.

Each workflow calls a collaborator outside the store lock and feeds the result
back as a command. Collaborator failures are recorded on the bill as messages
instead of escaping to the caller.
"""
from typing import Callable, Dict, List, Optional

from loguru import logger

from . import gemini_ocr, minio_utils, suggestions
from .errors import ExtractionError, SuggestionError
from .models import BillState
from .store import (
    ApplySuggestedAssignments,
    BillStore,
    ExtractedLine,
    ExtractionFailed,
    LoadCustomSharedPools,
    LoadPeople,
    SetItemsFromExtraction,
    SuggestionFailed,
)

Extractor = Callable[[bytes], gemini_ocr.ExtractionResult]
Suggester = Callable[[List[str], List[str]], Dict[str, str]]


def scan_receipt(store: BillStore, image_bytes: bytes,
                 extractor: Extractor = gemini_ocr.extract_bill_items) -> BillState:
    try:
        result = extractor(image_bytes)
    except (ExtractionError, ValueError) as e:
        logger.error(f"Receipt extraction failed: {e}")
        return store.dispatch(ExtractionFailed(message=f"Failed to extract items: {e}"))

    if not result.items and not any([result.subtotal, result.vat, result.service_charge, result.delivery]):
        return store.dispatch(ExtractionFailed(
            message="Could not extract details from the bill. Please ensure it's a clear photo."
        ))

    return store.dispatch(SetItemsFromExtraction(
        items=[ExtractedLine(name=i.name, price=i.price, quantity=i.quantity) for i in result.items],
        subtotal=result.subtotal,
        vat=result.vat,
        service_charge=result.service_charge,
        delivery=result.delivery,
    ))


def suggest_for_unassigned(store: BillStore,
                           suggester: Suggester = suggestions.suggest_assignments) -> BillState:
    state = store.snapshot()
    item_names = list(dict.fromkeys(i.name for i in state.items if i.assigned_to is None and i.price > 0))
    people_names = [p.name for p in state.people]
    if not item_names or not people_names:
        return store.dispatch(SuggestionFailed(message="No unassigned items for suggestion."))

    try:
        mapping = suggester(item_names, people_names)
    except (SuggestionError, ValueError) as e:
        logger.error(f"Assignment suggestion failed: {e}")
        return store.dispatch(SuggestionFailed(message=f"Suggestion failed: {e}"))

    return store.dispatch(ApplySuggestedAssignments(assignments=mapping))


def save_lists(store: BillStore, list_name: str) -> bool:
    """Persist the people and custom pools of a bill. Items, assignments and charges are never saved."""
    state = store.snapshot()
    people = [p.model_dump() for p in state.people]
    pools = [p.model_dump(mode="json") for p in state.custom_pools]
    saved_people = minio_utils.save_people_list(people, list_name)
    saved_pools = minio_utils.save_custom_pools(pools, list_name)
    return saved_people is not None and saved_pools is not None


def restore_saved_lists(store: BillStore, list_name: str) -> BillState:
    """Load saved people first so restored pools can keep their members."""
    people: Optional[list] = minio_utils.load_people_list(list_name)
    if people is not None:
        store.dispatch(LoadPeople(payload=people))
    pools = minio_utils.load_custom_pools(list_name)
    if pools is not None:
        store.dispatch(LoadCustomSharedPools(payload=pools))
    return store.snapshot()
