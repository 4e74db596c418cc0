# split_bill/__init__.py
from .models import BillState, BillSummary, PersonSummary
from .split_logic import calculate_split
from .store import BillStore, apply_command

__version__ = "1.0.0"
