import io

import pytest
from PIL import Image

from split_bill.models import BillState, PersonTarget
from split_bill.store import AddItem, AssignItem, BillStore, SetPeopleCount


@pytest.fixture
def store():
    """A fresh bill with room for the default 20 people."""
    return BillStore(max_people=20)


@pytest.fixture
def store_with_people(store):
    """Bill with three people: Person 1, Person 2, Person 3."""
    store.dispatch(SetPeopleCount(count=3))
    return store


def add_item(store: BillStore, name: str, price) -> str:
    """Add an item and return its id."""
    state = store.dispatch(AddItem(name=name, price=price))
    return state.items[-1].id


def assign_to_person(store: BillStore, item_id: str, person_id: str) -> BillState:
    return store.dispatch(AssignItem(item_id=item_id, target=PersonTarget(id=person_id)))


@pytest.fixture
def jpeg_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (40, 60), color="white").save(buffer, format="JPEG")
    return buffer.getvalue()
