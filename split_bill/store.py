# split_bill/store.py
import threading
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from . import config
from .models import (
    ZERO,
    BillCharges,
    BillState,
    BillSummary,
    ChargeField,
    CustomPool,
    Item,
    Person,
    PersonTarget,
    PoolTarget,
    PriceMode,
    StoreMessage,
    Target,
)
from .split_logic import CENT, calculate_split, coerce_amount, parse_quantity

MIN_POOL_MEMBERS = 2


# --- Commands ---
class ExtractedLine(BaseModel):
    name: str = ""
    price: Any = 0
    quantity: Any = None


class SetItemsFromExtraction(BaseModel):
    type: Literal["SET_ITEMS_FROM_EXTRACTION"] = "SET_ITEMS_FROM_EXTRACTION"
    items: List[ExtractedLine] = Field(default_factory=list)
    subtotal: Any = None
    vat: Any = None
    service_charge: Any = None
    delivery: Any = None


class ExtractionFailed(BaseModel):
    type: Literal["EXTRACTION_FAILED"] = "EXTRACTION_FAILED"
    message: str


class SetPriceMode(BaseModel):
    type: Literal["SET_PRICE_MODE"] = "SET_PRICE_MODE"
    mode: PriceMode


class AddItem(BaseModel):
    type: Literal["ADD_ITEM"] = "ADD_ITEM"
    name: str = ""
    price: Any = 0


class UpdateItem(BaseModel):
    type: Literal["UPDATE_ITEM"] = "UPDATE_ITEM"
    id: str
    name: Optional[str] = None
    price: Any = None


class DeleteItem(BaseModel):
    type: Literal["DELETE_ITEM"] = "DELETE_ITEM"
    id: str


class SetCharge(BaseModel):
    type: Literal["SET_CHARGE"] = "SET_CHARGE"
    field: ChargeField
    value: Any = 0


class SetPeopleCount(BaseModel):
    type: Literal["SET_PEOPLE_COUNT"] = "SET_PEOPLE_COUNT"
    count: Any = 0


class RenamePerson(BaseModel):
    type: Literal["RENAME_PERSON"] = "RENAME_PERSON"
    id: str
    name: str


class CreatePool(BaseModel):
    type: Literal["CREATE_POOL"] = "CREATE_POOL"
    name: str
    person_ids: List[str] = Field(default_factory=list)


class UpdatePool(BaseModel):
    type: Literal["UPDATE_POOL"] = "UPDATE_POOL"
    id: str
    name: Optional[str] = None
    person_ids: Optional[List[str]] = None


class DeletePool(BaseModel):
    type: Literal["DELETE_POOL"] = "DELETE_POOL"
    id: str


class AssignItem(BaseModel):
    type: Literal["ASSIGN_ITEM"] = "ASSIGN_ITEM"
    item_id: str
    target: Optional[Target] = None


class ResetAssignments(BaseModel):
    type: Literal["RESET_ASSIGNMENTS"] = "RESET_ASSIGNMENTS"


class ApplySuggestedAssignments(BaseModel):
    type: Literal["APPLY_SUGGESTED_ASSIGNMENTS"] = "APPLY_SUGGESTED_ASSIGNMENTS"
    assignments: Dict[str, str] = Field(default_factory=dict)


class SuggestionFailed(BaseModel):
    type: Literal["SUGGESTION_FAILED"] = "SUGGESTION_FAILED"
    message: str


class LoadPeople(BaseModel):
    type: Literal["LOAD_PEOPLE"] = "LOAD_PEOPLE"
    payload: Any = None


class LoadCustomSharedPools(BaseModel):
    type: Literal["LOAD_CUSTOM_SHARED_POOLS"] = "LOAD_CUSTOM_SHARED_POOLS"
    payload: Any = None


class ClearMessage(BaseModel):
    type: Literal["CLEAR_MESSAGE"] = "CLEAR_MESSAGE"


class ResetAll(BaseModel):
    type: Literal["RESET_ALL"] = "RESET_ALL"


Command = Annotated[
    Union[
        SetItemsFromExtraction, ExtractionFailed, SetPriceMode,
        AddItem, UpdateItem, DeleteItem, SetCharge,
        SetPeopleCount, RenamePerson,
        CreatePool, UpdatePool, DeletePool,
        AssignItem, ResetAssignments, ApplySuggestedAssignments, SuggestionFailed,
        LoadPeople, LoadCustomSharedPools, ClearMessage, ResetAll,
    ],
    Field(discriminator="type"),
]


# --- Helpers ---
def _reject(state: BillState, text: str, source: str = "validation") -> BillState:
    logger.warning(f"Command rejected ({source}): {text}")
    return state.model_copy(update={"message": StoreMessage(source=source, text=text)})


def _done(state: BillState, **changes) -> BillState:
    """Build the next state; a successful command clears any earlier validation message."""
    if state.message is not None and state.message.source == "validation":
        changes.setdefault("message", None)
    return state.model_copy(update=changes)


def _with_assignment(item: Item, target) -> Item:
    return item.model_copy(update={"assigned_to": target})


def prune_references(state: BillState) -> BillState:
    """
    Restore referential integrity after people or pools changed.

    Pool memberships are filtered to existing people, empty pools are dropped,
    then items pointing at a missing person or pool are unassigned. Runs until
    nothing changes.
    """
    while True:
        person_ids = state.person_ids()
        pools = []
        for pool in state.custom_pools:
            members = tuple(pid for pid in pool.person_ids if pid in person_ids)
            if not members:
                continue
            pools.append(pool if members == pool.person_ids else pool.model_copy(update={"person_ids": members}))
        pool_ids = {p.id for p in pools}

        items = []
        for item in state.items:
            target = item.assigned_to
            dangling = (
                (isinstance(target, PersonTarget) and target.id not in person_ids)
                or (isinstance(target, PoolTarget) and target.id not in pool_ids)
            )
            items.append(_with_assignment(item, None) if dangling else item)

        new_state = state.model_copy(update={"custom_pools": tuple(pools), "items": tuple(items)})
        if new_state == state:
            return state
        state = new_state


def _unit_price(price: Decimal, quantity: int, price_mode: str) -> Decimal:
    if price_mode == "total" and quantity > 1 and price > 0:
        return (price / quantity).quantize(CENT, rounding=ROUND_HALF_UP)
    return price


def _validate_pool(state: BillState, name: str, person_ids: List[str]) -> Tuple[Optional[str], Tuple[str, ...]]:
    if not name or not name.strip():
        return "Please enter a name for the shared group.", ()
    existing = state.person_ids()
    members = tuple(pid for pid in dict.fromkeys(person_ids) if pid in existing)
    if len(members) < MIN_POOL_MEMBERS or len(members) != len(set(person_ids)):
        return f"A shared group must have at least {MIN_POOL_MEMBERS} existing members.", ()
    return None, members


def _coerce_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    amount = coerce_amount(value)
    return int(amount) if amount > 0 else 0


def _parse_people(payload: Any) -> Optional[Tuple[Person, ...]]:
    if not isinstance(payload, list):
        return None
    people = []
    for entry in payload:
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str) or not isinstance(entry.get("name"), str):
            return None
        people.append(Person(id=entry["id"], name=entry["name"]))
    if len({p.id for p in people}) != len(people):
        return None
    return tuple(people)


def _parse_pools(payload: Any) -> Optional[Tuple[CustomPool, ...]]:
    if not isinstance(payload, list):
        return None
    pools = []
    for entry in payload:
        if not isinstance(entry, dict):
            return None
        person_ids = entry.get("person_ids", entry.get("personIds"))
        if not isinstance(entry.get("id"), str) or not isinstance(entry.get("name"), str):
            return None
        if not isinstance(person_ids, list) or not all(isinstance(pid, str) for pid in person_ids):
            return None
        try:
            pools.append(CustomPool(id=entry["id"], name=entry["name"], person_ids=tuple(person_ids)))
        except ValidationError:
            return None
    if len({p.id for p in pools}) != len(pools):
        return None
    return tuple(pools)


# --- Transition function ---
def apply_command(state: BillState, command, max_people: int = 20, max_item_quantity: int = 50) -> BillState:
    """Apply one command to a state snapshot and return the next snapshot. Never raises for bad input."""
    if isinstance(command, SetItemsFromExtraction):
        items = []
        for line in command.items:
            quantity = parse_quantity(line.quantity)
            if quantity > max_item_quantity:
                return _reject(
                    state,
                    f"Quantity {quantity} for '{line.name}' exceeds the limit of {max_item_quantity}. Please check the bill.",
                    source="extraction",
                )
            price = coerce_amount(line.price)
            if price < 0:
                price = ZERO
            unit_price = _unit_price(price, quantity, state.price_mode)
            items.extend(Item(name=line.name, price=unit_price) for _ in range(quantity))
        charges = {}
        for field in ("subtotal", "vat", "service_charge", "delivery"):
            value = coerce_amount(getattr(command, field))
            charges[field] = value if value > 0 else ZERO
        logger.info(f"Loaded {len(items)} items from {len(command.items)} extracted lines")
        return state.model_copy(update={
            "items": tuple(items),
            "charges": BillCharges(**charges),
            "extraction_completed": True,
            "message": None,
        })

    if isinstance(command, ExtractionFailed):
        return _reject(state, command.message, source="extraction")

    if isinstance(command, SetPriceMode):
        return _done(state, price_mode=command.mode)

    if isinstance(command, AddItem):
        price = coerce_amount(command.price)
        if price < 0:
            return _reject(state, "Item price cannot be negative.")
        return _done(state, items=state.items + (Item(name=command.name, price=price),))

    if isinstance(command, UpdateItem):
        if command.id not in {i.id for i in state.items}:
            return state
        changes: Dict[str, Any] = {}
        if command.name is not None:
            changes["name"] = command.name
        if command.price is not None:
            price = coerce_amount(command.price)
            if price < 0:
                return _reject(state, "Item price cannot be negative.")
            changes["price"] = price
        items = tuple(i.model_copy(update=changes) if i.id == command.id else i for i in state.items)
        return _done(state, items=items)

    if isinstance(command, DeleteItem):
        return _done(state, items=tuple(i for i in state.items if i.id != command.id))

    if isinstance(command, SetCharge):
        value = coerce_amount(command.value)
        if value < 0:
            return _reject(state, f"{command.field.replace('_', ' ').capitalize()} cannot be negative.")
        return _done(state, charges=state.charges.model_copy(update={command.field: value}))

    if isinstance(command, SetPeopleCount):
        count = max(0, min(_coerce_count(command.count), max_people))
        people = list(state.people[:count])
        for i in range(len(people), count):
            people.append(Person(name=f"Person {i + 1}"))
        return prune_references(_done(state, people=tuple(people)))

    if isinstance(command, RenamePerson):
        people = tuple(p.model_copy(update={"name": command.name}) if p.id == command.id else p for p in state.people)
        return _done(state, people=people)

    if isinstance(command, CreatePool):
        error, members = _validate_pool(state, command.name, command.person_ids)
        if error:
            return _reject(state, error)
        pool = CustomPool(name=command.name.strip(), person_ids=members)
        return _done(state, custom_pools=state.custom_pools + (pool,))

    if isinstance(command, UpdatePool):
        pool = next((p for p in state.custom_pools if p.id == command.id), None)
        if pool is None:
            return state
        name = command.name if command.name is not None else pool.name
        person_ids = command.person_ids if command.person_ids is not None else list(pool.person_ids)
        error, members = _validate_pool(state, name, person_ids)
        if error:
            return _reject(state, error)
        updated = pool.model_copy(update={"name": name.strip(), "person_ids": members})
        return _done(state, custom_pools=tuple(updated if p.id == pool.id else p for p in state.custom_pools))

    if isinstance(command, DeletePool):
        if command.id not in state.pool_ids():
            return state
        pools = tuple(p for p in state.custom_pools if p.id != command.id)
        return prune_references(_done(state, custom_pools=pools))

    if isinstance(command, AssignItem):
        if command.item_id not in {i.id for i in state.items}:
            return state
        target = command.target
        if isinstance(target, PersonTarget) and target.id not in state.person_ids():
            return _reject(state, "Cannot assign an item to a person who is not on this bill.")
        if isinstance(target, PoolTarget) and target.id not in state.pool_ids():
            return _reject(state, "Cannot assign an item to a shared group that does not exist.")
        items = tuple(_with_assignment(i, target) if i.id == command.item_id else i for i in state.items)
        return _done(state, items=items)

    if isinstance(command, ResetAssignments):
        return _done(state, items=tuple(_with_assignment(i, None) for i in state.items))

    if isinstance(command, ApplySuggestedAssignments):
        people_by_name: Dict[str, Person] = {}
        for person in state.people:
            people_by_name.setdefault(person.name, person)
        unassigned_names = {i.name for i in state.items if i.assigned_to is None}
        usable = {
            item_name: people_by_name[person_name]
            for item_name, person_name in command.assignments.items()
            if item_name in unassigned_names and person_name in people_by_name
        }
        if not usable:
            return _reject(state, "No new assignments suggested.", source="suggestion")
        items = tuple(
            _with_assignment(i, PersonTarget(id=usable[i.name].id))
            if i.assigned_to is None and i.name in usable else i
            for i in state.items
        )
        logger.info(f"Applied {len(usable)} of {len(command.assignments)} suggested assignments")
        return state.model_copy(update={"items": items, "message": None})

    if isinstance(command, SuggestionFailed):
        return _reject(state, command.message, source="suggestion")

    if isinstance(command, LoadPeople):
        people = _parse_people(command.payload)
        if people is None:
            logger.debug("Discarding malformed saved people list")
            return state
        return prune_references(_done(state, people=people[:max_people]))

    if isinstance(command, LoadCustomSharedPools):
        pools = _parse_pools(command.payload)
        if pools is None:
            logger.debug("Discarding malformed saved custom pools")
            return state
        return prune_references(_done(state, custom_pools=pools))

    if isinstance(command, ClearMessage):
        return state.model_copy(update={"message": None})

    if isinstance(command, ResetAll):
        return BillState()

    logger.warning(f"Ignoring unknown command: {command!r}")
    return state


class BillStore:
    """Holds one bill's current state and applies commands to it one at a time."""

    def __init__(self, state: Optional[BillState] = None, max_people: Optional[int] = None,
                 max_item_quantity: Optional[int] = None):
        self._state = state or BillState()
        self.max_people = max_people if max_people is not None else config.get_max_people()
        self.max_item_quantity = (
            max_item_quantity if max_item_quantity is not None else config.get_max_item_quantity()
        )
        self._lock = threading.Lock()

    def dispatch(self, command) -> BillState:
        with self._lock:
            self._state = apply_command(
                self._state, command, max_people=self.max_people, max_item_quantity=self.max_item_quantity
            )
            logger.debug(f"Applied {getattr(command, 'type', type(command).__name__)}")
            return self._state

    def snapshot(self) -> BillState:
        with self._lock:
            return self._state

    def summary(self) -> BillSummary:
        return calculate_split(self.snapshot())
