# split_bill/models.py
import uuid
from decimal import Decimal
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

ZERO = Decimal("0")

PriceMode = Literal["unit", "total"]
MessageSource = Literal["extraction", "suggestion", "validation"]
ChargeField = Literal["subtotal", "vat", "service_charge", "delivery"]


def new_id() -> str:
    return str(uuid.uuid4())


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- Assignment targets ---
# Weak references: ids are resolved against the current state every time,
# never kept as links to live objects.
class PersonTarget(FrozenModel):
    kind: Literal["person"] = "person"
    id: str


class PoolTarget(FrozenModel):
    kind: Literal["pool"] = "pool"
    id: str


class SharedAllTarget(FrozenModel):
    kind: Literal["shared_all"] = "shared_all"


Target = Annotated[Union[PersonTarget, PoolTarget, SharedAllTarget], Field(discriminator="kind")]

SHARED_ALL = SharedAllTarget()


# --- Bill entities ---
class Item(FrozenModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    price: Decimal = Field(default=ZERO, ge=0, description="Unit price")
    assigned_to: Optional[Target] = None


class Person(FrozenModel):
    id: str = Field(default_factory=new_id)
    name: str


class CustomPool(FrozenModel):
    id: str = Field(default_factory=new_id)
    name: str
    person_ids: Tuple[str, ...] = ()


class BillCharges(FrozenModel):
    subtotal: Decimal = Field(default=ZERO, ge=0)
    vat: Decimal = Field(default=ZERO, ge=0)
    service_charge: Decimal = Field(default=ZERO, ge=0)
    delivery: Decimal = Field(default=ZERO, ge=0)


class StoreMessage(FrozenModel):
    source: MessageSource
    text: str


class BillState(FrozenModel):
    items: Tuple[Item, ...] = ()
    people: Tuple[Person, ...] = ()
    custom_pools: Tuple[CustomPool, ...] = ()
    charges: BillCharges = BillCharges()
    price_mode: PriceMode = "unit"
    extraction_completed: bool = False
    message: Optional[StoreMessage] = None

    def person_ids(self) -> set:
        return {p.id for p in self.people}

    def pool_ids(self) -> set:
        return {p.id for p in self.custom_pools}


# --- Derived summaries (never stored) ---
class PoolContribution(FrozenModel):
    pool_id: str
    pool_name: str
    amount: Decimal


class PoolBreakdown(FrozenModel):
    pool_id: str
    pool_name: str
    person_ids: Tuple[str, ...]
    total: Decimal
    per_member_share: Decimal


class PersonSummary(FrozenModel):
    person_id: str
    name: str
    items: Tuple[Item, ...] = ()
    items_subtotal: Decimal = ZERO
    shared_items_portion: Decimal = ZERO
    custom_pool_contributions: Tuple[PoolContribution, ...] = ()
    subtotal_contribution: Decimal = ZERO
    vat_share: Decimal = ZERO
    service_charge_share: Decimal = ZERO
    delivery_share: Decimal = ZERO
    total_due: Decimal = ZERO


class BillSummary(FrozenModel):
    people: Tuple[PersonSummary, ...] = ()
    items_total: Decimal = ZERO
    unassigned_total: Decimal = ZERO
    proportional_base: Decimal = ZERO
    shared_all_total: Decimal = ZERO
    shared_all_per_person: Decimal = ZERO
    active_pools: Tuple[PoolBreakdown, ...] = ()
    grand_total: Decimal = ZERO
    people_total: Decimal = ZERO
    discrepancy: Decimal = ZERO
